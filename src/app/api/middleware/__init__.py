"""API middleware package."""

from src.app.api.middleware.logging import LoggingMiddleware
from src.app.api.middleware.tenant import TenantAuthMiddleware

__all__ = ["LoggingMiddleware", "TenantAuthMiddleware"]
