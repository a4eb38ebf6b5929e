"""Deal repository -- async, tenant-scoped persistence for deals.

Uses the session_factory callable pattern: every method opens its own
session via ``async for session in self._session_factory()``.

Soft-deleted rows are excluded from every read unless the caller passes
include_deleted=True; there is no implicit query filter.

save_deal() is the only write path for existing deals. It compares the
stored version with the version the caller read and raises
ConcurrentModificationError if another writer got there first.
"""

from __future__ import annotations

import math
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.dialects.postgresql import array
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.exceptions import ConcurrentModificationError
from src.app.deals.models import DealModel
from src.app.deals.schemas import Deal, DealFilter, DealPage, DealQuery

logger = structlog.get_logger(__name__)

LIKE_ESCAPE = "\\"

# Columns that hold embedded documents and are serialized in JSON mode.
_JSON_COLUMNS = {
    "stage_history",
    "notes",
    "custom_fields",
    "tags",
    "labels",
    "attachments",
}


# ── Serialization Helpers ───────────────────────────────────────────────────


def _deal_to_values(deal: Deal) -> dict:
    """Flatten a Deal into column values for insert/update."""
    values = deal.model_dump(exclude=_JSON_COLUMNS)
    values["status"] = deal.status.value
    values["priority"] = deal.priority.value
    values.update(deal.model_dump(mode="json", include=_JSON_COLUMNS))
    return values


def _model_to_deal(model: DealModel) -> Deal:
    """Convert DealModel to the Deal schema."""
    data = {column.key: getattr(model, column.key) for column in DealModel.__table__.columns}
    for key in _JSON_COLUMNS:
        if data.get(key) is None:
            data[key] = {} if key == "custom_fields" else []
    return Deal.model_validate(data)


def _apply_filters(stmt, organization_id: str, filters: DealFilter | None, include_deleted: bool):
    stmt = stmt.where(DealModel.organization_id == organization_id)
    if not include_deleted:
        stmt = stmt.where(DealModel.is_deleted.is_(False))
    if filters is None:
        return stmt

    if filters.pipeline_id is not None:
        stmt = stmt.where(DealModel.pipeline_id == filters.pipeline_id)
    if filters.stage_id is not None:
        stmt = stmt.where(DealModel.stage_id == filters.stage_id)
    if filters.assigned_to is not None:
        stmt = stmt.where(DealModel.assigned_to == filters.assigned_to)
    if filters.status is not None:
        stmt = stmt.where(DealModel.status == filters.status.value)
    if filters.priority is not None:
        stmt = stmt.where(DealModel.priority == filters.priority.value)
    if filters.start_date is not None:
        stmt = stmt.where(DealModel.created_at >= filters.start_date)
    if filters.end_date is not None:
        stmt = stmt.where(DealModel.created_at <= filters.end_date)
    if filters.min_value is not None:
        stmt = stmt.where(DealModel.value >= filters.min_value)
    if filters.max_value is not None:
        stmt = stmt.where(DealModel.value <= filters.max_value)
    if filters.tags:
        stmt = stmt.where(DealModel.tags.has_any(array(filters.tags)))
    if filters.search:
        pattern = like_pattern(filters.search)
        stmt = stmt.where(
            or_(
                DealModel.title.ilike(pattern, escape=LIKE_ESCAPE),
                DealModel.description.ilike(pattern, escape=LIKE_ESCAPE),
                _public_note_matches(pattern),
            )
        )
    return stmt


def like_pattern(search: str) -> str:
    """Substring pattern for ILIKE with the wildcards in search taken literally."""
    escaped = (
        search.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    return f"%{escaped}%"


def _public_note_matches(pattern: str):
    """EXISTS over the deal's notes: a non-private note whose content matches."""
    note = func.json_array_elements(DealModel.notes).table_valued("value").alias("note")
    return exists(
        select(1)
        .select_from(note)
        .where(note.c.value.op("->>")("content").ilike(pattern, escape=LIKE_ESCAPE))
        .where(func.coalesce(note.c.value.op("->>")("is_private"), "false") != "true")
    )


def order_by_clause(query: DealQuery):
    """ORDER BY expression for a listing query.

    days_in_current_stage is only written on save, so that sort orders by
    current_stage_entered_at reversed: the earliest entry has been there longest.
    """
    if query.sort == "days_in_current_stage":
        column = DealModel.current_stage_entered_at
        return column.desc() if query.order == "asc" else column.asc()
    column = getattr(DealModel, query.sort)
    return column.asc() if query.order == "asc" else column.desc()


# ── Repository ──────────────────────────────────────────────────────────────


class DealRepository:
    """Async CRUD for deals, scoped by organization_id.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def add_deal(self, deal: Deal) -> Deal:
        """Insert a new deal. The stored row starts at version 1."""
        async for session in self._session_factory():
            stored = deal.model_copy(update={"version": 1})
            session.add(DealModel(**_deal_to_values(stored)))
            await session.commit()
            logger.debug("deal_inserted", deal_id=deal.id, organization_id=deal.organization_id)
            return stored

    async def get_deal(
        self,
        organization_id: str,
        deal_id: str,
        include_deleted: bool = False,
    ) -> Deal | None:
        """Load a deal by id within an organization.

        Returns:
            Deal if found (and not soft-deleted, unless include_deleted), None otherwise.
        """
        async for session in self._session_factory():
            stmt = _apply_filters(
                select(DealModel), organization_id, None, include_deleted
            ).where(DealModel.id == deal_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_deal(model)

    async def list_deals(
        self,
        organization_id: str,
        filters: DealFilter | None = None,
        query: DealQuery | None = None,
        include_deleted: bool = False,
    ) -> DealPage:
        """One page of deals matching filters, sorted per query."""
        query = query or DealQuery()
        async for session in self._session_factory():
            base = _apply_filters(select(DealModel), organization_id, filters, include_deleted)

            count_stmt = select(func.count()).select_from(base.subquery())
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = (
                base.order_by(order_by_clause(query), DealModel.id)
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            )
            result = await session.execute(stmt)
            items = [_model_to_deal(m) for m in result.scalars().all()]
            return DealPage(
                items=items,
                page=query.page,
                limit=query.limit,
                total=total,
                total_pages=math.ceil(total / query.limit),
            )

    async def find_deals(
        self,
        organization_id: str,
        filters: DealFilter | None = None,
        include_deleted: bool = False,
    ) -> list[Deal]:
        """All deals matching filters, newest first. Used by reporting reads."""
        async for session in self._session_factory():
            stmt = _apply_filters(
                select(DealModel), organization_id, filters, include_deleted
            ).order_by(DealModel.created_at.desc())
            result = await session.execute(stmt)
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def count_deals(
        self,
        organization_id: str,
        filters: DealFilter | None = None,
        include_deleted: bool = False,
    ) -> int:
        async for session in self._session_factory():
            stmt = _apply_filters(
                select(func.count(DealModel.id)), organization_id, filters, include_deleted
            )
            result = await session.execute(stmt)
            return result.scalar_one()

    async def save_deal(self, deal: Deal) -> Deal:
        """Persist a modified deal with an optimistic version check.

        Returns:
            The deal as stored, with version incremented.

        Raises:
            ConcurrentModificationError: If the stored version differs from
                deal.version (another writer saved in between).
        """
        async for session in self._session_factory():
            stored = deal.model_copy(update={"version": deal.version + 1})
            values = _deal_to_values(stored)
            values.pop("id")
            values.pop("organization_id")
            stmt = (
                update(DealModel)
                .where(
                    DealModel.id == deal.id,
                    DealModel.organization_id == deal.organization_id,
                    DealModel.version == deal.version,
                )
                .values(**values)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                raise ConcurrentModificationError("Deal", deal.id, deal.version)
            await session.commit()
            return stored
