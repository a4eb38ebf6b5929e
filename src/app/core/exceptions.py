"""Domain errors raised by the CRM services and repositories.

Routers translate these into HTTP responses (see ERROR_STATUS_CODES); the
service layer never raises HTTPException itself.
"""

from __future__ import annotations


class CRMError(Exception):
    """Base class for domain errors that map to a client-facing status."""


class DealNotFoundError(CRMError):
    def __init__(self, deal_id: str) -> None:
        self.deal_id = deal_id
        super().__init__(f"Deal not found: {deal_id}")


class PipelineNotFoundError(CRMError):
    def __init__(self, pipeline_id: str) -> None:
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline not found: {pipeline_id}")


class StageNotFoundError(CRMError):
    def __init__(self, stage_id: str, pipeline_id: str | None = None) -> None:
        self.stage_id = stage_id
        self.pipeline_id = pipeline_id
        super().__init__(f"Stage not found: {stage_id}")


class DealValidationError(CRMError, ValueError):
    """Request is well-formed but violates a business rule."""


class DealConflictError(CRMError):
    """Operation conflicts with the current state (e.g. deleting a pipeline in use)."""


class ConcurrentModificationError(CRMError):
    """A save lost the race: the stored version moved on since the record was read."""

    def __init__(self, entity: str, entity_id: str, expected_version: int) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity} {entity_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


ERROR_STATUS_CODES: dict[type[CRMError], int] = {
    DealNotFoundError: 404,
    PipelineNotFoundError: 404,
    StageNotFoundError: 404,
    DealValidationError: 400,
    DealConflictError: 409,
    ConcurrentModificationError: 409,
}


def status_code_for(exc: CRMError) -> int:
    for exc_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, exc_type):
            return status_code
    return 400
