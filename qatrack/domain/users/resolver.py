from collections.abc import Iterable

from loguru import logger
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.domain.users.models import (
    Action,
    Permission,
    PermissionKey,
    RolePermission,
    Task,
    UserPermission,
    UserRole,
)


class PermissionResolver:
    """Computes a user's effective permissions from roles and direct grants.

    Every call re-queries the store. Nothing is memoized here, so revoking a
    role or a grant is visible to the very next guard evaluation.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def effective_permissions(self, user_id: int) -> frozenset[PermissionKey]:
        """Returns the union of role-derived and directly granted permissions.

        Both legs are read in a single statement so the result always reflects
        one snapshot of the join tables, even while a full-replace assignment
        is being committed by another request.

        Args:
            user_id: The primary key of the user.

        Returns:
            frozenset[PermissionKey]: Deduplicated (task, action) pairs.
        """
        via_roles = (
            select(Permission.task_name, Permission.action)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .join(UserRole, UserRole.role_id == RolePermission.role_id)
            .where(UserRole.user_id == user_id)
        )
        direct = (
            select(Permission.task_name, Permission.action)
            .join(UserPermission, UserPermission.permission_id == Permission.id)
            .where(UserPermission.user_id == user_id)
        )

        rows = (await self.session.exec(via_roles.union(direct))).all()
        permissions = frozenset(PermissionKey(Task(task), Action(action)) for task, action in rows)
        logger.debug(f"Resolved {len(permissions)} permissions for user {user_id}")
        return permissions

    async def has_all(self, user_id: int, required: Iterable[PermissionKey]) -> bool:
        """True if every required pair is held. Vacuously true for an empty requirement."""
        required = frozenset(required)
        if not required:
            return True
        return required <= await self.effective_permissions(user_id)

    async def has_any(self, user_id: int, required: Iterable[PermissionKey]) -> bool:
        """True if at least one required pair is held. Vacuously false for an empty requirement."""
        required = frozenset(required)
        if not required:
            return False
        return not required.isdisjoint(await self.effective_permissions(user_id))
