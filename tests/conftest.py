"""Shared test fixtures: in-memory repositories, a controllable clock, and services.

The in-memory repositories mirror DealRepository/PipelineRepository
semantics closely enough for service and API tests to run without a
database: records are copied on the way in and out, soft-deleted rows are
hidden unless include_deleted=True, and save_deal() enforces the same
optimistic version check.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from src.app.config import Settings
from src.app.core.exceptions import ConcurrentModificationError
from src.app.deals.schemas import Deal, DealFilter, DealPage, DealQuery
from src.app.deals.service import DealService
from src.app.pipelines.schemas import Pipeline
from src.app.pipelines.service import PipelineService
from src.app.schemas.auth import CurrentUser, UserRole

ORG_ID = "org-alpha"
OTHER_ORG_ID = "org-beta"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── Clock ────────────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


def _matches(deal: Deal, filters: DealFilter | None) -> bool:
    if filters is None:
        return True
    if filters.pipeline_id is not None and deal.pipeline_id != filters.pipeline_id:
        return False
    if filters.stage_id is not None and deal.stage_id != filters.stage_id:
        return False
    if filters.assigned_to is not None and deal.assigned_to != filters.assigned_to:
        return False
    if filters.status is not None and deal.status != filters.status:
        return False
    if filters.priority is not None and deal.priority != filters.priority:
        return False
    if filters.start_date is not None and deal.created_at < filters.start_date:
        return False
    if filters.end_date is not None and deal.created_at > filters.end_date:
        return False
    if filters.min_value is not None and deal.value < filters.min_value:
        return False
    if filters.max_value is not None and deal.value > filters.max_value:
        return False
    if filters.tags and not set(filters.tags) & set(deal.tags):
        return False
    if filters.search:
        needle = filters.search.lower()
        haystack = [deal.title, deal.description or ""] + [
            n.content for n in deal.notes if not n.is_private
        ]
        if not any(needle in text.lower() for text in haystack):
            return False
    return True


class InMemoryDealRepository:
    """In-memory DealRepository for testing without database."""

    def __init__(self) -> None:
        self._deals: dict[str, Deal] = {}
        self.save_calls = 0

    async def add_deal(self, deal: Deal) -> Deal:
        stored = deal.model_copy(update={"version": 1}, deep=True)
        self._deals[deal.id] = stored
        return stored.model_copy(deep=True)

    async def get_deal(
        self, organization_id: str, deal_id: str, include_deleted: bool = False
    ) -> Deal | None:
        deal = self._deals.get(deal_id)
        if deal is None or deal.organization_id != organization_id:
            return None
        if deal.is_deleted and not include_deleted:
            return None
        return deal.model_copy(deep=True)

    def _select(
        self, organization_id: str, filters: DealFilter | None, include_deleted: bool
    ) -> list[Deal]:
        return [
            d.model_copy(deep=True)
            for d in self._deals.values()
            if d.organization_id == organization_id
            and (include_deleted or not d.is_deleted)
            and _matches(d, filters)
        ]

    async def list_deals(
        self,
        organization_id: str,
        filters: DealFilter | None = None,
        query: DealQuery | None = None,
        include_deleted: bool = False,
    ) -> DealPage:
        query = query or DealQuery()
        deals = self._select(organization_id, filters, include_deleted)
        if query.sort == "days_in_current_stage":
            deals.sort(
                key=lambda d: d.current_stage_entered_at, reverse=query.order == "asc"
            )
        else:
            deals.sort(
                key=lambda d: (getattr(d, query.sort) is None, getattr(d, query.sort) or 0),
                reverse=query.order == "desc",
            )
        start = (query.page - 1) * query.limit
        return DealPage(
            items=deals[start : start + query.limit],
            page=query.page,
            limit=query.limit,
            total=len(deals),
            total_pages=math.ceil(len(deals) / query.limit),
        )

    async def find_deals(
        self,
        organization_id: str,
        filters: DealFilter | None = None,
        include_deleted: bool = False,
    ) -> list[Deal]:
        deals = self._select(organization_id, filters, include_deleted)
        return sorted(deals, key=lambda d: d.created_at, reverse=True)

    async def count_deals(
        self,
        organization_id: str,
        filters: DealFilter | None = None,
        include_deleted: bool = False,
    ) -> int:
        return len(self._select(organization_id, filters, include_deleted))

    async def save_deal(self, deal: Deal) -> Deal:
        self.save_calls += 1
        current = self._deals.get(deal.id)
        if (
            current is None
            or current.organization_id != deal.organization_id
            or current.version != deal.version
        ):
            raise ConcurrentModificationError("Deal", deal.id, deal.version)
        stored = deal.model_copy(update={"version": deal.version + 1}, deep=True)
        self._deals[deal.id] = stored
        return stored.model_copy(deep=True)

    def bump_version(self, deal_id: str) -> None:
        """Simulate another writer saving the deal."""
        current = self._deals[deal_id]
        self._deals[deal_id] = current.model_copy(update={"version": current.version + 1})


class InMemoryPipelineRepository:
    """In-memory PipelineRepository for testing without database."""

    def __init__(self) -> None:
        self._pipelines: dict[str, Pipeline] = {}

    async def add_pipeline(self, pipeline: Pipeline) -> Pipeline:
        self._pipelines[pipeline.id] = pipeline.model_copy(deep=True)
        return pipeline.model_copy(deep=True)

    async def get_pipeline(
        self, organization_id: str, pipeline_id: str, include_deleted: bool = False
    ) -> Pipeline | None:
        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None or pipeline.organization_id != organization_id:
            return None
        if pipeline.is_deleted and not include_deleted:
            return None
        return pipeline.model_copy(deep=True)

    async def list_pipelines(
        self,
        organization_id: str,
        include_inactive: bool = False,
        include_deleted: bool = False,
    ) -> list[Pipeline]:
        pipelines = [
            p.model_copy(deep=True)
            for p in self._pipelines.values()
            if p.organization_id == organization_id
            and (include_inactive or p.is_active)
            and (include_deleted or not p.is_deleted)
        ]
        return sorted(pipelines, key=lambda p: (not p.is_default, p.name))

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        current = self._pipelines.get(pipeline.id)
        if current is None or current.organization_id != pipeline.organization_id:
            raise ValueError(f"Pipeline not found: {pipeline.id}")
        self._pipelines[pipeline.id] = pipeline.model_copy(deep=True)
        return pipeline.model_copy(deep=True)

    async def clear_default(self, organization_id: str, keep_id: str | None = None) -> None:
        for pipeline_id, pipeline in self._pipelines.items():
            if (
                pipeline.organization_id == organization_id
                and pipeline.is_default
                and not pipeline.is_deleted
                and pipeline_id != keep_id
            ):
                self._pipelines[pipeline_id] = pipeline.model_copy(update={"is_default": False})


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(STUCK_DEAL_THRESHOLD_DAYS=7, STAGE_MOVE_MAX_ATTEMPTS=3)


@pytest.fixture
def deal_repo() -> InMemoryDealRepository:
    return InMemoryDealRepository()


@pytest.fixture
def pipeline_repo() -> InMemoryPipelineRepository:
    return InMemoryPipelineRepository()


@pytest.fixture
def deal_service(deal_repo, pipeline_repo, settings, clock) -> DealService:
    return DealService(deal_repo, pipeline_repo, settings=settings, clock=clock)


@pytest.fixture
def pipeline_service(pipeline_repo, deal_repo, clock) -> PipelineService:
    return PipelineService(pipeline_repo, deal_repo, clock=clock)


@pytest.fixture
def admin() -> CurrentUser:
    return CurrentUser(user_id="u-admin", organization_id=ORG_ID, role=UserRole.ADMIN)


@pytest.fixture
def manager() -> CurrentUser:
    return CurrentUser(user_id="u-manager", organization_id=ORG_ID, role=UserRole.MANAGER)


@pytest.fixture
def sales_rep() -> CurrentUser:
    return CurrentUser(user_id="u-rep", organization_id=ORG_ID, role=UserRole.SALES_REP)


@pytest.fixture
def outsider() -> CurrentUser:
    return CurrentUser(user_id="u-other", organization_id=OTHER_ORG_ID, role=UserRole.ADMIN)
