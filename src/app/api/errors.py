"""Translation of domain errors into HTTP errors for the v1 routers."""

from __future__ import annotations

from fastapi import HTTPException

from src.app.core.exceptions import CRMError, status_code_for


def http_error(exc: CRMError) -> HTTPException:
    """HTTPException carrying the domain error's message and mapped status."""
    return HTTPException(status_code=status_code_for(exc), detail=str(exc))
