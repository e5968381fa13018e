from collections.abc import Iterable

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.core.exceptions import Conflict, NotFound, ReferentialGuardViolation, ValidationFailed
from qatrack.domain.users.catalog import lookup_permissions
from qatrack.domain.users.models import Role, RolePermission, User, UserRole


class RoleStore:
    """Administration of roles and of the user-to-role assignment."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_roles(self) -> list[Role]:
        statement = (
            select(Role)
            .options(selectinload(Role.permissions))
            .order_by(Role.name)
            .execution_options(populate_existing=True)
        )
        return list((await self.session.exec(statement)).all())

    async def get(self, role_id: int) -> Role:
        statement = (
            select(Role)
            .where(Role.id == role_id)
            .options(selectinload(Role.permissions))
            .execution_options(populate_existing=True)
        )
        role = (await self.session.exec(statement)).first()
        if not role:
            raise NotFound("Role not found")
        return role

    async def _checked_name(self, name: str, role_id: int | None = None) -> str:
        name = name.strip()
        if not name:
            raise ValidationFailed("Role name is required")
        existing = (await self.session.exec(select(Role).where(Role.name == name))).first()
        if existing and existing.id != role_id:
            raise Conflict("Role name already exists")
        return name

    async def create(self, name: str, description: str | None, permissions: Iterable[tuple[str, str]]) -> Role:
        """Creates a role with the given permission set. Uncataloged pairs are ignored.

        Raises:
            ValidationFailed: If the name is blank.
            Conflict: If a role with the same name exists.
        """
        name = await self._checked_name(name)

        granted = await lookup_permissions(self.session, permissions)
        role = Role(name=name, description=description)
        try:
            self.session.add(role)
            await self.session.flush()
            for permission in granted:
                self.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
            await self.session.commit()
        except IntegrityError as e:
            # Lost a race against a concurrent create with the same name
            await self.session.rollback()
            raise Conflict("Role name already exists") from e
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Created role '{name}' with {len(granted)} permissions.")
        return await self.get(role.id)

    async def update(
        self,
        role_id: int,
        name: str,
        description: str | None,
        permissions: Iterable[tuple[str, str]],
    ) -> Role:
        """Renames a role and replaces its permission set wholesale.

        Raises:
            NotFound: If the role does not exist.
            ValidationFailed: If the name is blank.
            Conflict: If another role already uses the name.
        """
        role = await self.get(role_id)
        name = await self._checked_name(name, role_id)

        granted = await lookup_permissions(self.session, permissions)
        try:
            role.name = name
            role.description = description
            self.session.add(role)
            await self.session.exec(delete(RolePermission).where(RolePermission.role_id == role_id))
            for permission in granted:
                self.session.add(RolePermission(role_id=role_id, permission_id=permission.id))
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise Conflict("Role name already exists") from e
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Updated role {role_id} ('{name}') to {len(granted)} permissions.")
        return await self.get(role_id)

    async def delete(self, role_id: int) -> None:
        """Deletes an unassigned role together with its permission associations.

        Raises:
            NotFound: If the role does not exist.
            ReferentialGuardViolation: If any user still holds the role.
        """
        await self.get(role_id)

        assigned = (await self.session.exec(select(UserRole).where(UserRole.role_id == role_id).limit(1))).first()
        if assigned:
            raise ReferentialGuardViolation("Cannot delete role that is assigned to users")

        try:
            await self.session.exec(delete(RolePermission).where(RolePermission.role_id == role_id))
            await self.session.exec(delete(Role).where(Role.id == role_id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Deleted role {role_id}")

    async def assign_roles(self, user_id: int, role_ids: Iterable[int]) -> list[Role]:
        """Replaces the user's role set in a single transaction.

        A concurrent resolver call sees either the old set or the new one.

        Raises:
            NotFound: If the user or any of the roles does not exist.
        """
        if not await self.session.get(User, user_id):
            raise NotFound("User not found")

        wanted = set(role_ids)
        roles = list((await self.session.exec(select(Role).where(Role.id.in_(wanted)))).all()) if wanted else []
        missing = wanted - {role.id for role in roles}
        if missing:
            raise NotFound(f"Role(s) not found: {sorted(missing)}")

        try:
            await self.session.exec(delete(UserRole).where(UserRole.user_id == user_id))
            for role in roles:
                self.session.add(UserRole(user_id=user_id, role_id=role.id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Assigned roles {sorted(wanted)} to user {user_id}")
        return roles
