"""Pipeline repository -- async, tenant-scoped persistence for pipelines.

Same session_factory pattern as DealRepository. Stages and settings are
serialized via model_dump(mode="json") and read back via model_validate().
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.pipelines.models import PipelineModel
from src.app.pipelines.schemas import Pipeline

logger = structlog.get_logger(__name__)


def _pipeline_to_values(pipeline: Pipeline) -> dict:
    values = pipeline.model_dump(exclude={"stages", "settings"})
    values.update(pipeline.model_dump(mode="json", include={"stages", "settings"}))
    return values


def _model_to_pipeline(model: PipelineModel) -> Pipeline:
    """Convert PipelineModel to the Pipeline schema."""
    return Pipeline.model_validate(
        {
            "id": model.id,
            "organization_id": model.organization_id,
            "name": model.name,
            "description": model.description,
            "is_default": model.is_default,
            "is_active": model.is_active,
            "stages": model.stages or [],
            "settings": model.settings or {},
            "created_by": model.created_by,
            "updated_by": model.updated_by,
            "created_at": model.created_at,
            "updated_at": model.updated_at,
            "is_deleted": model.is_deleted,
            "deleted_at": model.deleted_at,
            "deleted_by": model.deleted_by,
        }
    )


class PipelineRepository:
    """Async CRUD for pipelines, scoped by organization_id.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def add_pipeline(self, pipeline: Pipeline) -> Pipeline:
        async for session in self._session_factory():
            session.add(PipelineModel(**_pipeline_to_values(pipeline)))
            await session.commit()
            return pipeline

    async def get_pipeline(
        self,
        organization_id: str,
        pipeline_id: str,
        include_deleted: bool = False,
    ) -> Pipeline | None:
        """Load a pipeline by id within an organization.

        Returns:
            Pipeline if found (and not soft-deleted, unless include_deleted), None otherwise.
        """
        async for session in self._session_factory():
            stmt = select(PipelineModel).where(
                PipelineModel.organization_id == organization_id,
                PipelineModel.id == pipeline_id,
            )
            if not include_deleted:
                stmt = stmt.where(PipelineModel.is_deleted.is_(False))
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_pipeline(model)

    async def list_pipelines(
        self,
        organization_id: str,
        include_inactive: bool = False,
        include_deleted: bool = False,
    ) -> list[Pipeline]:
        """Pipelines of an organization, default first, then by name."""
        async for session in self._session_factory():
            stmt = select(PipelineModel).where(
                PipelineModel.organization_id == organization_id,
            )
            if not include_inactive:
                stmt = stmt.where(PipelineModel.is_active.is_(True))
            if not include_deleted:
                stmt = stmt.where(PipelineModel.is_deleted.is_(False))
            stmt = stmt.order_by(PipelineModel.is_default.desc(), PipelineModel.name)
            result = await session.execute(stmt)
            return [_model_to_pipeline(m) for m in result.scalars().all()]

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        """Write all fields of an existing pipeline.

        Raises:
            ValueError: If the pipeline does not exist.
        """
        async for session in self._session_factory():
            values = _pipeline_to_values(pipeline)
            values.pop("id")
            values.pop("organization_id")
            stmt = (
                update(PipelineModel)
                .where(
                    PipelineModel.organization_id == pipeline.organization_id,
                    PipelineModel.id == pipeline.id,
                )
                .values(**values)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                raise ValueError(
                    f"Pipeline not found: organization={pipeline.organization_id}, id={pipeline.id}"
                )
            await session.commit()
            return pipeline

    async def clear_default(self, organization_id: str, keep_id: str | None = None) -> None:
        """Unset is_default on every live pipeline of the organization except keep_id."""
        async for session in self._session_factory():
            stmt = update(PipelineModel).where(
                PipelineModel.organization_id == organization_id,
                PipelineModel.is_default.is_(True),
                PipelineModel.is_deleted.is_(False),
            )
            if keep_id is not None:
                stmt = stmt.where(PipelineModel.id != keep_id)
            await session.execute(stmt.values(is_default=False))
            await session.commit()
            logger.debug("pipeline_default_cleared", organization_id=organization_id)
