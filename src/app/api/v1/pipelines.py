"""REST API endpoints for pipelines and their stages.

All endpoints require authentication and tenant context. PipelineService
lives on app.state; domain errors are translated by http_error().
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from src.app.api.deps import get_current_user, get_tenant
from src.app.api.errors import http_error
from src.app.core.exceptions import CRMError
from src.app.core.tenant import TenantContext
from src.app.pipelines.schemas import (
    Pipeline,
    PipelineAnalytics,
    PipelineCreate,
    PipelineUpdate,
    StageCreate,
    StageOrder,
    StageUpdate,
)
from src.app.pipelines.service import PipelineService
from src.app.schemas.auth import CurrentUser

router = APIRouter(prefix="/pipelines", tags=["pipelines"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class ReorderStagesRequest(BaseModel):
    """Request body for reordering stages."""

    stage_orders: list[StageOrder] = Field(min_length=1)


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_pipeline_service(request: Request) -> PipelineService:
    """Retrieve PipelineService from app.state, 503 if not available."""
    service = getattr(request.app.state, "pipeline_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline management not initialized",
        )
    return service


# ── Pipeline Endpoints ───────────────────────────────────────────────────────


@router.get("", response_model=list[Pipeline])
async def list_pipelines(
    request: Request,
    include_inactive: bool = Query(default=False),
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> list[Pipeline]:
    """List the organization's pipelines, default first."""
    service = _get_pipeline_service(request)
    return await service.list_pipelines(user, include_inactive=include_inactive)


@router.post("", response_model=Pipeline, status_code=201)
async def create_pipeline(
    body: PipelineCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Pipeline:
    """Create a pipeline. Without stages, the default template is used."""
    service = _get_pipeline_service(request)
    try:
        return await service.create_pipeline(user, body)
    except CRMError as exc:
        raise http_error(exc) from exc


@router.get("/{pipeline_id}", response_model=Pipeline)
async def get_pipeline(
    pipeline_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Pipeline:
    service = _get_pipeline_service(request)
    try:
        return await service.get_pipeline(user, pipeline_id)
    except CRMError as exc:
        raise http_error(exc) from exc


@router.patch("/{pipeline_id}", response_model=Pipeline)
async def update_pipeline(
    pipeline_id: str,
    body: PipelineUpdate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Pipeline:
    service = _get_pipeline_service(request)
    try:
        return await service.update_pipeline(user, pipeline_id, body)
    except CRMError as exc:
        raise http_error(exc) from exc


@router.delete("/{pipeline_id}", status_code=204)
async def delete_pipeline(
    pipeline_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Response:
    """Soft-delete a pipeline that has no deals and is not the default."""
    service = _get_pipeline_service(request)
    try:
        await service.delete_pipeline(user, pipeline_id)
    except CRMError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{pipeline_id}/analytics", response_model=PipelineAnalytics)
async def get_pipeline_analytics(
    pipeline_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> PipelineAnalytics:
    """Per-stage counts, values, average stage age and conversion rates."""
    service = _get_pipeline_service(request)
    try:
        return await service.get_pipeline_analytics(user, pipeline_id)
    except CRMError as exc:
        raise http_error(exc) from exc


# ── Stage Endpoints ──────────────────────────────────────────────────────────


@router.post("/{pipeline_id}/stages", response_model=Pipeline, status_code=201)
async def add_stage(
    pipeline_id: str,
    body: StageCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Pipeline:
    """Append a stage to the pipeline."""
    service = _get_pipeline_service(request)
    try:
        return await service.add_stage(user, pipeline_id, body)
    except CRMError as exc:
        raise http_error(exc) from exc


@router.put("/{pipeline_id}/stages/order", response_model=Pipeline)
async def reorder_stages(
    pipeline_id: str,
    body: ReorderStagesRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Pipeline:
    """Set new stage positions; orders are renumbered sequentially afterwards."""
    service = _get_pipeline_service(request)
    try:
        return await service.reorder_stages(user, pipeline_id, body.stage_orders)
    except CRMError as exc:
        raise http_error(exc) from exc


@router.patch("/{pipeline_id}/stages/{stage_id}", response_model=Pipeline)
async def update_stage(
    pipeline_id: str,
    stage_id: str,
    body: StageUpdate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Pipeline:
    service = _get_pipeline_service(request)
    try:
        return await service.update_stage(user, pipeline_id, stage_id, body)
    except CRMError as exc:
        raise http_error(exc) from exc


@router.delete("/{pipeline_id}/stages/{stage_id}", response_model=Pipeline)
async def remove_stage(
    pipeline_id: str,
    stage_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
) -> Pipeline:
    """Remove an empty stage; a pipeline keeps at least two stages."""
    service = _get_pipeline_service(request)
    try:
        return await service.remove_stage(user, pipeline_id, stage_id)
    except CRMError as exc:
        raise http_error(exc) from exc
