from typing import Annotated

from fastapi import APIRouter, Depends, status
from loguru import logger
from sqlalchemy.orm import selectinload
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.app.guard import require_permissions
from qatrack.app.schemas import (
    AssignPermissionsIn,
    AssignRolesIn,
    MessageOut,
    PermissionIn,
    PermissionOut,
    ResetPasswordIn,
    RoleIn,
    RoleOut,
    UpdateInfoIn,
    UserDetailOut,
    UserListItem,
    UserOut,
)
from qatrack.core.database import get_session
from qatrack.core.exceptions import NotFound
from qatrack.core.security import SessionIdentity, SessionIssuer, get_session_issuer
from qatrack.domain.users.credentials import CredentialStore
from qatrack.domain.users.grants import DirectGrantStore
from qatrack.domain.users.models import Action, Permission, Task, User
from qatrack.domain.users.resolver import PermissionResolver
from qatrack.domain.users.roles import RoleStore
from qatrack.domain.users.two_factor import TwoFactorGate

router = APIRouter(prefix="/admin", tags=["Administration"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
AdminRead = Annotated[SessionIdentity, Depends(require_permissions((Task.ADMINISTRATION, Action.READ)))]
AdminWrite = Annotated[SessionIdentity, Depends(require_permissions((Task.ADMINISTRATION, Action.WRITE)))]
AdminDelete = Annotated[SessionIdentity, Depends(require_permissions((Task.ADMINISTRATION, Action.DELETE)))]


def _pairs(permissions: list[PermissionIn]) -> list[tuple[str, str]]:
    return [(p.task_name.value, p.action.value) for p in permissions]


async def _load_user(session: AsyncSession, user_id: int) -> User:
    statement = (
        select(User)
        .where(User.id == user_id)
        .options(selectinload(User.roles), selectinload(User.direct_permissions))
        .execution_options(populate_existing=True)
    )
    user = (await session.exec(statement)).first()
    if not user:
        raise NotFound("User not found")
    return user


# --- Users ---


@router.get("/users")
async def list_users(_: AdminRead, session: SessionDep) -> list[UserListItem]:
    """Lists every account together with the names of its roles."""
    statement = (
        select(User)
        .options(selectinload(User.roles))
        .order_by(User.username)
        .execution_options(populate_existing=True)
    )
    users = (await session.exec(statement)).all()
    return [
        UserListItem(
            **UserOut.model_validate(user).model_dump(),
            roles=sorted(role.name for role in user.roles),
        )
        for user in users
    ]


@router.get("/users/{user_id}")
async def get_user(user_id: int, _: AdminRead, session: SessionDep) -> UserDetailOut:
    user = await _load_user(session, user_id)
    return UserDetailOut(
        **UserOut.model_validate(user).model_dump(),
        roles=sorted(role.name for role in user.roles),
        role_ids=sorted(role.id for role in user.roles),
        direct_permissions=[PermissionOut.model_validate(p) for p in user.direct_permissions],
    )


@router.put("/users/{user_id}/deactivate")
async def deactivate_user(user_id: int, identity: AdminWrite, session: SessionDep) -> MessageOut:
    """Hard-deletes the account. Administrators cannot remove themselves."""
    await CredentialStore(session).deactivate(user_id, acting_user_id=identity.id)
    return MessageOut(message="User deactivated successfully")


@router.put("/users/{user_id}/reset-password")
async def reset_password(
    user_id: int, payload: ResetPasswordIn, identity: AdminWrite, session: SessionDep
) -> MessageOut:
    await CredentialStore(session).reset_password(user_id, payload.new_password)
    logger.info(f"Admin {identity.id} reset the password of user {user_id}")
    return MessageOut(message="Password reset successfully")


@router.put("/users/{user_id}/update-info")
async def update_user_info(user_id: int, payload: UpdateInfoIn, identity: AdminWrite, session: SessionDep) -> UserOut:
    user = await CredentialStore(session).update_info(user_id, payload.real_name, payload.email)
    logger.info(f"Admin {identity.id} updated profile of user {user_id}")
    return UserOut.model_validate(user)


@router.put("/users/{user_id}/reset-2fa")
async def reset_two_factor(
    user_id: int,
    identity: AdminWrite,
    session: SessionDep,
    issuer: Annotated[SessionIssuer, Depends(get_session_issuer)],
) -> MessageOut:
    """Returns the user to password-only login."""
    await TwoFactorGate(session, issuer).reset(user_id)
    logger.info(f"Admin {identity.id} reset 2FA of user {user_id}")
    return MessageOut(message="2FA reset successfully")


@router.post("/users/{user_id}/roles")
async def assign_roles(user_id: int, payload: AssignRolesIn, identity: AdminWrite, session: SessionDep) -> MessageOut:
    """Replaces the user's roles with exactly the given set."""
    await RoleStore(session).assign_roles(user_id, payload.role_ids)
    logger.info(f"Admin {identity.id} replaced roles of user {user_id}")
    return MessageOut(message="Roles assigned successfully")


@router.post("/users/{user_id}/permissions")
async def assign_permissions(
    user_id: int, payload: AssignPermissionsIn, identity: AdminWrite, session: SessionDep
) -> MessageOut:
    """Replaces the user's direct grants with exactly the given set."""
    await DirectGrantStore(session).assign_permissions(user_id, _pairs(payload.permissions))
    logger.info(f"Admin {identity.id} replaced direct grants of user {user_id}")
    return MessageOut(message="Permissions assigned successfully")


@router.get("/users/{user_id}/permissions")
async def user_effective_permissions(user_id: int, _: AdminRead, session: SessionDep) -> list[PermissionOut]:
    await CredentialStore(session).get(user_id)
    permissions = await PermissionResolver(session).effective_permissions(user_id)
    return [PermissionOut.from_key(key) for key in sorted(permissions)]


# --- Roles ---


@router.get("/roles")
async def list_roles(_: AdminRead, session: SessionDep) -> list[RoleOut]:
    return [RoleOut.model_validate(role) for role in await RoleStore(session).list_roles()]


@router.post("/roles", status_code=status.HTTP_201_CREATED)
async def create_role(payload: RoleIn, _: AdminWrite, session: SessionDep) -> RoleOut:
    role = await RoleStore(session).create(payload.name, payload.description, _pairs(payload.permissions))
    return RoleOut.model_validate(role)


@router.put("/roles/{role_id}")
async def update_role(role_id: int, payload: RoleIn, _: AdminWrite, session: SessionDep) -> RoleOut:
    role = await RoleStore(session).update(role_id, payload.name, payload.description, _pairs(payload.permissions))
    return RoleOut.model_validate(role)


@router.delete("/roles/{role_id}")
async def delete_role(role_id: int, _: AdminDelete, session: SessionDep) -> MessageOut:
    """Deletes a role that no user holds.

    Raises:
        ReferentialGuardViolation: If the role is still assigned.
    """
    await RoleStore(session).delete(role_id)
    return MessageOut(message="Role deleted successfully")


# --- Catalog ---


@router.get("/permissions")
async def list_permissions(_: AdminRead, session: SessionDep) -> list[PermissionOut]:
    statement = select(Permission).order_by(Permission.task_name, Permission.action)
    return [PermissionOut.model_validate(p) for p in (await session.exec(statement)).all()]
