"""
Calibra — Request dependencies (caller identity, capabilities, services).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, Header

from app.errors import ForbiddenError, UnauthorizedError
from app.services.calibration_service import CalibrationService
from app.utils.permissions import Permission, has_permission


@dataclass(frozen=True)
class UserContext:
    account_id: uuid.UUID
    email: str
    role: str
    department_id: str | None = None

    def can(self, permission: Permission) -> bool:
        return has_permission(self.role, permission)


async def get_user_context(
    x_account_id: str | None = Header(None),
    x_user_email: str | None = Header(None),
    x_user_role: str | None = Header(None),
    x_department_id: str | None = Header(None),
) -> UserContext:
    """Build the caller context from the headers set by the auth gateway."""
    if not x_account_id:
        raise UnauthorizedError()
    try:
        account_id = uuid.UUID(x_account_id)
    except ValueError:
        raise UnauthorizedError()

    return UserContext(
        account_id=account_id,
        email=(x_user_email or "system").strip(),
        role=(x_user_role or "").strip().upper(),
        department_id=x_department_id or None,
    )


def require_permission(permission: Permission):
    async def _check(user: UserContext = Depends(get_user_context)) -> UserContext:
        if not user.can(permission):
            raise ForbiddenError()
        return user

    return _check


_service: CalibrationService | None = None


def get_calibration_service() -> CalibrationService:
    global _service
    if _service is None:
        _service = CalibrationService()
    return _service
