from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from wikiauth.logging import get_logger
from wikiauth.service.errors import AuthenticationError, ForbiddenError

if TYPE_CHECKING:
    from wikiauth.storage.models import UserRecord

logger = get_logger(__name__)


class Role(str, Enum):
    """User roles ordered by access level."""

    ADMIN = "admin"
    EDITOR = "editor"
    CONTRIBUTOR = "contributor"
    VIEWER = "viewer"

    @property
    def level(self) -> int:
        return ACCESS_LEVELS[self]

    @classmethod
    def parse(cls, value: str) -> "Role":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"unknown role: {value}") from None


ACCESS_LEVELS = {
    Role.ADMIN: 10,
    Role.EDITOR: 5,
    Role.CONTRIBUTOR: 3,
    Role.VIEWER: 1,
}
NO_ACCESS = 0


class Operation(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE_USERS = "manage_users"
    SYSTEM_SETTINGS = "system_settings"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    TEAM = "team"


@dataclass(frozen=True)
class PermissionResult:
    granted: bool
    reason: str


def _level_of(user: "UserRecord") -> int:
    try:
        return Role.parse(user.role).level
    except ValueError:
        # Unknown role on a stored record grants nothing beyond anonymous
        return NO_ACCESS


def check_permission(
    operation: Operation,
    user: Optional["UserRecord"],
    resource_owner_id: Optional[str] = None,
    visibility: Visibility = Visibility.PUBLIC,
) -> PermissionResult:
    """Evaluate ``operation`` for ``user`` against a resource.

    Pure function: the caller passes the resolved user explicitly, there is
    no ambient "current user". The access level is derived from the role on
    every call so a stale ``access_level`` field cannot widen access.
    """
    operation = Operation(operation)
    visibility = Visibility(visibility)
    is_public = visibility is Visibility.PUBLIC

    if user is None:
        granted = operation is Operation.READ and is_public
        return PermissionResult(
            granted, "Public content readable by all" if granted else "Authentication required"
        )

    level = _level_of(user)
    is_owner = resource_owner_id is not None and resource_owner_id == user.id

    if operation is Operation.CREATE:
        granted = level >= ACCESS_LEVELS[Role.CONTRIBUTOR]
        reason = f"{user.role} can create content" if granted else "Viewers cannot create content"
    elif operation is Operation.READ:
        if level >= ACCESS_LEVELS[Role.EDITOR]:
            granted, reason = True, f"{user.role} can read all content"
        elif level >= ACCESS_LEVELS[Role.CONTRIBUTOR]:
            granted = is_public or is_owner
            if not granted:
                reason = "Cannot read others' private content"
            else:
                reason = "Owner can read own content" if is_owner else "Public content readable"
        else:
            granted = is_public
            reason = "Public content readable" if granted else "Private content requires higher access"
    elif operation is Operation.UPDATE:
        if level >= ACCESS_LEVELS[Role.EDITOR]:
            granted, reason = True, f"{user.role} can update any content"
        elif level >= ACCESS_LEVELS[Role.CONTRIBUTOR]:
            granted = is_owner
            reason = "Owner can update own content" if is_owner else "Cannot update others' content"
        else:
            granted, reason = False, "Viewer cannot update content"
    elif operation is Operation.DELETE:
        granted = level >= ACCESS_LEVELS[Role.ADMIN]
        reason = "Admin can delete content" if granted else "Only admin can delete content"
    elif operation is Operation.MANAGE_USERS:
        granted = level >= ACCESS_LEVELS[Role.ADMIN]
        reason = "Admin can manage users" if granted else "Only admin can manage users"
    else:
        granted = level >= ACCESS_LEVELS[Role.ADMIN]
        reason = (
            "Admin can modify system settings"
            if granted
            else "Only admin can modify system settings"
        )

    logger.debug(
        "permission_checked",
        operation=operation.value,
        user_id=user.id,
        role=user.role,
        is_owner=is_owner,
        visibility=visibility.value,
        granted=granted,
    )
    return PermissionResult(granted, reason)


def required_level(operation: Operation, own: bool = False) -> int:
    """Minimum access level for ``operation``; reads of private content also need ownership."""
    operation = Operation(operation)
    if operation is Operation.CREATE:
        return ACCESS_LEVELS[Role.CONTRIBUTOR]
    if operation is Operation.READ:
        return ACCESS_LEVELS[Role.VIEWER]
    if operation is Operation.UPDATE:
        return ACCESS_LEVELS[Role.CONTRIBUTOR] if own else ACCESS_LEVELS[Role.EDITOR]
    return ACCESS_LEVELS[Role.ADMIN]


def require_permission(
    operation: Operation,
    user: Optional["UserRecord"],
    resource_owner_id: Optional[str] = None,
    visibility: Visibility = Visibility.PUBLIC,
) -> PermissionResult:
    """Like ``check_permission`` but raises when access is denied."""
    result = check_permission(operation, user, resource_owner_id, visibility)
    if result.granted:
        return result
    if user is None:
        raise AuthenticationError(result.reason)
    raise ForbiddenError(result.reason, detail={"operation": Operation(operation).value})


__all__ = [
    "Role",
    "Operation",
    "Visibility",
    "PermissionResult",
    "ACCESS_LEVELS",
    "check_permission",
    "required_level",
    "require_permission",
]
