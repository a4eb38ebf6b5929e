"""Tenant resolution middleware with JWT and header-based modes.

Resolves the organization from:
1. The organization_id claim of a bearer JWT (preferred for user requests)
2. X-Organization-ID header (fallback for service-to-service calls)

After resolution, sets TenantContext in contextvars for the request scope
and records the organization on request.state for outer middleware.
"""

from __future__ import annotations

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.core.security import decode_token
from src.app.core.tenant import (
    SKIP_TENANT_PATHS,
    TenantContext,
    reset_tenant_context,
    set_tenant_context,
)

logger = structlog.get_logger(__name__)

ORGANIZATION_HEADER = "X-Organization-ID"


class TenantAuthMiddleware(BaseHTTPMiddleware):
    """Middleware that resolves the organization from JWT claims or a header.

    Paths in SKIP_TENANT_PATHS are excluded from tenant resolution. Requests
    without any organization are rejected with 400 before reaching a route.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
            return await call_next(request)

        tenant_ctx = self._resolve_from_jwt(request) or self._resolve_from_header(request)

        if tenant_ctx is None:
            logger.warning("tenant_unresolved", path=path)
            return JSONResponse(
                status_code=400,
                content={
                    "detail": (
                        "Missing tenant context. Provide Authorization header with JWT "
                        f"or {ORGANIZATION_HEADER} header."
                    )
                },
            )

        request.state.organization_id = tenant_ctx.organization_id
        token = set_tenant_context(tenant_ctx)
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)

    def _resolve_from_jwt(self, request: Request) -> TenantContext | None:
        """Extract the organization from the Authorization bearer token."""
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return None

        payload = decode_token(auth_header[7:])
        if payload is None:
            return None

        organization_id = payload.get("organization_id")
        if not organization_id:
            return None
        return TenantContext(organization_id=organization_id)

    def _resolve_from_header(self, request: Request) -> TenantContext | None:
        organization_id = request.headers.get(ORGANIZATION_HEADER, "").strip()
        if not organization_id:
            return None
        return TenantContext(organization_id=organization_id)
