"""FastAPI dependency injection for tenant context and authentication.

These dependencies are used in endpoint function signatures to inject
the current organization and the authenticated caller.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from src.app.core.security import verify_token
from src.app.core.tenant import TenantContext, get_current_tenant
from src.app.schemas.auth import CurrentUser, UserRole


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantAuthMiddleware)."""
    try:
        return get_current_tenant()
    except RuntimeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing tenant context",
        )


async def get_current_user(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> CurrentUser:
    """Build the caller identity from the bearer JWT.

    Raises:
        HTTPException(401): If no valid token is provided.
        HTTPException(403): If the token's organization differs from the
            request's tenant context.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(auth_header[7:], token_type="access")

    if payload["organization_id"] != tenant.organization_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token organization does not match request tenant context",
        )

    try:
        role = UserRole(payload.get("role", UserRole.SALES_REP.value))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown role in token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = CurrentUser(
        user_id=payload["sub"],
        organization_id=payload["organization_id"],
        role=role,
        email=payload.get("email"),
    )
    request.state.user_id = user.user_id
    return user


# Alias for cleaner endpoint signatures
require_auth = Depends(get_current_user)
