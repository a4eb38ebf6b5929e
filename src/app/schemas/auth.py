"""Pydantic schemas describing the authenticated caller."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class UserRole(str, Enum):
    """Organization roles. Sales reps only see deals assigned to them."""

    ADMIN = "admin"
    MANAGER = "manager"
    SALES_REP = "sales_rep"


class CurrentUser(BaseModel):
    """Identity of the caller, resolved from a verified bearer token."""

    user_id: str
    organization_id: str
    role: UserRole = UserRole.SALES_REP
    email: str | None = None

    @property
    def is_sales_rep(self) -> bool:
        return self.role == UserRole.SALES_REP
