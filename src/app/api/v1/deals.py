"""REST API endpoints for deals.

Provides CRUD, stage moves, notes, stage history, and the reporting reads
(analytics, stuck deals, kanban board). All endpoints require authentication
and tenant context; DealService lives on app.state and domain errors are
translated to HTTP status codes by http_error().
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel

from src.app.api.deps import get_current_user, get_tenant
from src.app.api.errors import http_error
from src.app.config import get_settings
from src.app.core.exceptions import CRMError
from src.app.core.tenant import TenantContext
from src.app.deals import tracker
from src.app.deals.schemas import (
    AnalyticsPeriod,
    Deal,
    DealAnalytics,
    DealCreate,
    DealFilter,
    DealNote,
    DealPriority,
    DealQuery,
    DealSortField,
    DealStatus,
    DealUpdate,
    KanbanBoard,
    MoveStageRequest,
    NoteCreate,
    StageHistoryEntry,
)
from src.app.deals.service import DealService
from src.app.schemas.auth import CurrentUser

router = APIRouter(prefix="/deals", tags=["deals"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class DealResponse(Deal):
    """Deal plus read-only values derived at response time."""

    days_since_creation: int = 0
    is_overdue: bool = False


class DealListResponse(BaseModel):
    items: list[DealResponse]
    page: int
    limit: int
    total: int
    total_pages: int


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_deal_service(request: Request) -> DealService:
    """Retrieve DealService from app.state, 503 if not available."""
    service = getattr(request.app.state, "deal_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal management not initialized",
        )
    return service


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _deal_to_response(deal: Deal, now: datetime | None = None) -> DealResponse:
    return DealResponse.model_validate(
        {
            **deal.model_dump(),
            "days_since_creation": tracker.days_since_creation(deal, now),
            "is_overdue": tracker.is_overdue(deal, now),
        }
    )


# ── Collection Endpoints ─────────────────────────────────────────────────────


@router.get("", response_model=DealListResponse)
async def list_deals(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    sort: DealSortField = Query(default="created_at"),
    order: Literal["asc", "desc"] = Query(default="desc"),
    search: str | None = Query(default=None, max_length=200),
    pipeline_id: str | None = Query(default=None),
    stage_id: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None),
    deal_status: DealStatus | None = Query(default=None, alias="status"),
    priority: DealPriority | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    min_value: float | None = Query(default=None, ge=0),
    max_value: float | None = Query(default=None, ge=0),
    tags: list[str] | None = Query(default=None),
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealListResponse:
    """List deals with filters, pagination and sorting."""
    service = _get_deal_service(request)
    settings = get_settings()

    filters = DealFilter(
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        assigned_to=assigned_to,
        status=deal_status,
        priority=priority,
        start_date=start_date,
        end_date=end_date,
        min_value=min_value,
        max_value=max_value,
        tags=tags or [],
        search=search,
    )
    query = DealQuery(
        page=page,
        limit=min(limit or settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE),
        sort=sort,
        order=order,
    )
    result = await service.list_deals(user, filters, query)
    return DealListResponse(
        items=[_deal_to_response(d) for d in result.items],
        page=result.page,
        limit=result.limit,
        total=result.total,
        total_pages=result.total_pages,
    )


@router.post("", response_model=DealResponse, status_code=201)
async def create_deal(
    body: DealCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealResponse:
    """Create a deal in a pipeline stage."""
    service = _get_deal_service(request)
    try:
        deal = await service.create_deal(user, body)
    except CRMError as exc:
        raise http_error(exc) from exc
    return _deal_to_response(deal)


# ── Reporting Endpoints ──────────────────────────────────────────────────────


@router.get("/analytics", response_model=DealAnalytics)
async def get_deal_analytics(
    request: Request,
    period: AnalyticsPeriod = Query(default="30d"),
    pipeline_id: str | None = Query(default=None),
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealAnalytics:
    """Deal totals and win rate for deals created in the last 7, 30 or 90 days."""
    service = _get_deal_service(request)
    return await service.get_deal_analytics(user, period, pipeline_id)


@router.get("/stuck", response_model=list[DealResponse])
async def list_stuck_deals(
    request: Request,
    pipeline_id: str | None = Query(default=None),
    threshold_days: int | None = Query(default=None, ge=1),
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[DealResponse]:
    """Open deals that have been in their current stage too long."""
    service = _get_deal_service(request)
    deals = await service.list_stuck_deals(user, pipeline_id, threshold_days)
    return [_deal_to_response(d) for d in deals]


@router.get("/pipeline/{pipeline_id}", response_model=KanbanBoard)
async def get_deals_by_stage(
    pipeline_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> KanbanBoard:
    """Kanban board: the pipeline's deals grouped by stage."""
    service = _get_deal_service(request)
    try:
        return await service.get_deals_by_stage(user, pipeline_id)
    except CRMError as exc:
        raise http_error(exc) from exc


# ── Single Deal Endpoints ────────────────────────────────────────────────────


@router.get("/{deal_id}", response_model=DealResponse)
async def get_deal(
    deal_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealResponse:
    """Get a single deal by ID."""
    service = _get_deal_service(request)
    try:
        deal = await service.get_deal(user, deal_id)
    except CRMError as exc:
        raise http_error(exc) from exc
    return _deal_to_response(deal)


@router.patch("/{deal_id}", response_model=DealResponse)
async def update_deal(
    deal_id: str,
    body: DealUpdate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealResponse:
    """Partially update a deal. A new stage_id is tracked as a stage move."""
    service = _get_deal_service(request)
    try:
        deal = await service.update_deal(user, deal_id, body)
    except CRMError as exc:
        raise http_error(exc) from exc
    return _deal_to_response(deal)


@router.delete("/{deal_id}", status_code=204)
async def delete_deal(
    deal_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Response:
    """Soft-delete a deal."""
    service = _get_deal_service(request)
    try:
        await service.delete_deal(user, deal_id)
    except CRMError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{deal_id}/move", response_model=DealResponse)
async def move_deal_to_stage(
    deal_id: str,
    body: MoveStageRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealResponse:
    """Move a deal to another stage of its pipeline."""
    service = _get_deal_service(request)
    try:
        deal = await service.move_deal_to_stage(user, deal_id, body.stage_id, body.reason)
    except CRMError as exc:
        raise http_error(exc) from exc
    return _deal_to_response(deal)


@router.post("/{deal_id}/notes", response_model=DealNote, status_code=201)
async def add_note(
    deal_id: str,
    body: NoteCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> DealNote:
    """Attach a note to a deal."""
    service = _get_deal_service(request)
    try:
        return await service.add_note(user, deal_id, body)
    except CRMError as exc:
        raise http_error(exc) from exc


@router.get("/{deal_id}/history", response_model=list[StageHistoryEntry])
async def get_deal_history(
    deal_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[StageHistoryEntry]:
    """Stage history of a deal, oldest interval first."""
    service = _get_deal_service(request)
    try:
        return await service.get_deal_history(user, deal_id)
    except CRMError as exc:
        raise http_error(exc) from exc
