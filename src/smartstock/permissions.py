"""Single authorization gate for every mutating operation.

Roles are nothing more than named permission bundles: the table lives in
:data:`smartstock.constants.ROLE_PERMISSIONS` and this module is the only
place that treats the ADMIN role specially.
"""

from __future__ import annotations

from typing import FrozenSet, Optional, Union

from . import log
from .constants import ROLE_PERMISSIONS, Permission, UserRole
from .data_manager import UserRow
from .errors import PermissionDenied


def default_permissions(role: Union[UserRole, str]) -> FrozenSet[str]:
    """Return the permission bundle attached to ``role``."""

    return frozenset(permission.value for permission in ROLE_PERMISSIONS[UserRole(role)])


def has_permission(user: Optional[UserRow], permission: Union[Permission, str]) -> bool:
    """Decide whether ``user`` may exercise ``permission``.

    Anonymous and deactivated accounts hold no permissions. Administrators
    bypass the explicit permission set entirely.
    """

    if user is None or not user.is_active:
        return False
    if user.role == UserRole.ADMIN.value:
        return True
    return Permission(permission).value in user.permissions


def require_permission(user: Optional[UserRow], permission: Union[Permission, str]) -> None:
    """Raise :class:`PermissionDenied` unless ``user`` holds ``permission``."""

    if not has_permission(user, permission):
        username = user.username if user is not None else None
        log.warning("Permission %s denied for user '%s'", Permission(permission).value, username)
        raise PermissionDenied(username, Permission(permission).value)
