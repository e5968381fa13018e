from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Annotated

from fastapi import Depends
from loguru import logger
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.core.database import get_session
from qatrack.core.exceptions import Forbidden
from qatrack.core.security import SessionIdentity, get_current_identity
from qatrack.domain.users.models import Action, PermissionKey, Task
from qatrack.domain.users.resolver import PermissionResolver


class GuardMode(StrEnum):
    ALL = "all"
    ANY = "any"


def require_permissions(
    *pairs: tuple[Task, Action],
    mode: GuardMode = GuardMode.ALL,
) -> Callable[..., Awaitable[SessionIdentity]]:
    """Builds a route dependency enforcing the given permissions.

    The caller's token is verified first (401 on failure), then the resolver is
    consulted. Nothing is cached between requests.

    Args:
        *pairs: The required (task, action) pairs.
        mode: ``ALL`` requires every pair, ``ANY`` at least one.

    Returns:
        A dependency resolving to the caller's ``SessionIdentity``.
    """
    required = frozenset(PermissionKey(task, action) for task, action in pairs)
    label = f" {mode.value.upper()} ".join(sorted(str(k) for k in required))

    async def guard(
        identity: Annotated[SessionIdentity, Depends(get_current_identity)],
        session: Annotated[AsyncSession, Depends(get_session)],
    ) -> SessionIdentity:
        resolver = PermissionResolver(session)
        if mode is GuardMode.ANY:
            allowed = await resolver.has_any(identity.id, required)
        else:
            allowed = await resolver.has_all(identity.id, required)

        if not allowed:
            logger.warning(f"Forbidden: user {identity.id} lacks {label}")
            raise Forbidden()
        return identity

    return guard
