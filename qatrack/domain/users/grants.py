from collections.abc import Iterable

from loguru import logger
from sqlalchemy import delete
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.core.exceptions import NotFound
from qatrack.domain.users.catalog import lookup_permissions
from qatrack.domain.users.models import Permission, PermissionKey, User, UserPermission


class DirectGrantStore:
    """Per-user permission grants that bypass roles."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_direct(self, user_id: int) -> list[PermissionKey]:
        statement = (
            select(Permission)
            .join(UserPermission, UserPermission.permission_id == Permission.id)
            .where(UserPermission.user_id == user_id)
        )
        return sorted(p.key for p in (await self.session.exec(statement)).all())

    async def assign_permissions(self, user_id: int, pairs: Iterable[tuple[str, str]]) -> list[PermissionKey]:
        """Replaces the user's direct grants in a single transaction.

        Pairs outside the catalog are ignored.

        Raises:
            NotFound: If the user does not exist.
        """
        if not await self.session.get(User, user_id):
            raise NotFound("User not found")

        granted = await lookup_permissions(self.session, pairs)
        try:
            await self.session.exec(delete(UserPermission).where(UserPermission.user_id == user_id))
            for permission in granted:
                self.session.add(UserPermission(user_id=user_id, permission_id=permission.id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        keys = sorted(p.key for p in granted)
        logger.info(f"Replaced direct grants of user {user_id}: {[str(k) for k in keys]}")
        return keys
