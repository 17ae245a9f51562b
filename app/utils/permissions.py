"""
Calibra — Role capabilities.

Authentication happens upstream; the gateway forwards the caller's role and
the engine only asks "does this role carry capability X".
"""

from __future__ import annotations

from enum import Enum


class Permission(str, Enum):
    CALIBRATION_VIEW = "calibration:view"
    CALIBRATION_MANAGE = "calibration:manage"


_VIEW_AND_MANAGE = frozenset({Permission.CALIBRATION_VIEW, Permission.CALIBRATION_MANAGE})
_VIEW_ONLY = frozenset({Permission.CALIBRATION_VIEW})

ROLE_PERMISSIONS: dict[str, frozenset[Permission]] = {
    "FOCALIZAHR_ADMIN": _VIEW_AND_MANAGE,
    "ACCOUNT_OWNER": _VIEW_AND_MANAGE,
    "HR_ADMIN": _VIEW_AND_MANAGE,
    "HR_MANAGER": _VIEW_AND_MANAGE,
    "CEO": _VIEW_AND_MANAGE,
    "AREA_MANAGER": _VIEW_ONLY,
    "EVALUATOR": _VIEW_ONLY,
    "HR_OPERATOR": _VIEW_ONLY,
    "VIEWER": frozenset(),
}


def has_permission(role: str | None, permission: Permission | str) -> bool:
    """Unknown or missing roles carry no capabilities."""
    if not role:
        return False
    granted = ROLE_PERMISSIONS.get(role.upper(), frozenset())
    return Permission(permission) in granted
