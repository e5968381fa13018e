"""Permission catalog and seed roles.

The catalog is the complete authorizable surface of the application: every
task crossed with every action. It is written to the ``permissions`` table at
startup with insert-if-absent semantics and never modified by users.

Seed roles are keyed by a stable ``seed_key`` so renaming "Test Manager" in the
admin panel does not orphan its seeding rules.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from itertools import product

from loguru import logger
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.core.security import hash_password
from qatrack.domain.users.models import (
    Action,
    Permission,
    PermissionKey,
    Role,
    RolePermission,
    Task,
    User,
    UserRole,
)

_TASK_LABELS: dict[Task, tuple[str, str]] = {
    # task: (plural noun, verb phrase for write)
    Task.TESTSUITE_MANAGEMENT: ("test suites", "Create/edit test suites"),
    Task.TEST_MANAGEMENT: ("tests", "Create/edit tests"),
    Task.TESTSUITE_EXECUTION: ("test suite executions", "Execute test suites"),
    Task.TEST_EXECUTION: ("test executions", "Execute tests"),
}

_ADMINISTRATION_DESCRIPTIONS: dict[Action, str] = {
    Action.READ: "View administration panel",
    Action.WRITE: "Manage system settings",
    Action.APPROVE: "Approve administrative changes",
    Action.DELETE: "Delete system data",
}


def _describe(key: PermissionKey) -> str:
    if key.task is Task.ADMINISTRATION:
        return _ADMINISTRATION_DESCRIPTIONS[key.action]
    noun, write_phrase = _TASK_LABELS[key.task]
    return {
        Action.READ: f"View {noun}",
        Action.WRITE: write_phrase,
        Action.APPROVE: f"Approve {noun}",
        Action.DELETE: f"Delete {noun}",
    }[key.action]


PERMISSION_CATALOG: tuple[PermissionKey, ...] = tuple(PermissionKey(t, a) for t, a in product(Task, Action))
CATALOG_DESCRIPTIONS: dict[PermissionKey, str] = {key: _describe(key) for key in PERMISSION_CATALOG}


_CATALOG_STRINGS = frozenset((key.task.value, key.action.value) for key in PERMISSION_CATALOG)


def is_cataloged(task: str, action: str) -> bool:
    """True if the raw (task, action) strings name a catalog entry."""
    return (task, action) in _CATALOG_STRINGS


async def lookup_permissions(session: AsyncSession, pairs: Iterable[tuple[str, str]]) -> list[Permission]:
    """Maps (task, action) pairs onto their permission rows.

    Pairs outside the catalog are dropped silently. Permissions are never
    created on demand.
    """
    wanted = {(str(task), str(action)) for task, action in pairs}
    unknown = {pair for pair in wanted if not is_cataloged(*pair)}
    if unknown:
        logger.debug(f"Ignoring {len(unknown)} uncataloged permission pair(s): {sorted(unknown)}")

    rows = (await session.exec(select(Permission))).all()
    return [p for p in rows if (p.task_name, p.action) in wanted - unknown]


@dataclass(frozen=True)
class RoleSeed:
    key: str
    name: str
    description: str
    permissions: frozenset[PermissionKey]


def _grants(tasks: list[Task], actions: list[Action]) -> frozenset[PermissionKey]:
    return frozenset(PermissionKey(t, a) for t, a in product(tasks, actions))


_MANAGEMENT = [Task.TESTSUITE_MANAGEMENT, Task.TEST_MANAGEMENT]
_EXECUTION = [Task.TESTSUITE_EXECUTION, Task.TEST_EXECUTION]

ADMINISTRATOR = "administrator"
TEST_MANAGER = "test_manager"
TESTER = "tester"
VIEWER = "viewer"

ROLE_SEEDS: tuple[RoleSeed, ...] = (
    RoleSeed(ADMINISTRATOR, "Administrator", "Full system access", frozenset(PERMISSION_CATALOG)),
    RoleSeed(
        TEST_MANAGER,
        "Test Manager",
        "Manages test suites and tests",
        _grants(_MANAGEMENT, [Action.READ, Action.WRITE, Action.APPROVE])
        | _grants(_EXECUTION, [Action.READ, Action.WRITE]),
    ),
    RoleSeed(TESTER, "Tester", "Can execute tests", _grants(_EXECUTION, [Action.READ, Action.WRITE])),
    RoleSeed(VIEWER, "Viewer", "Read-only access", _grants([*_MANAGEMENT, *_EXECUTION], [Action.READ])),
)


async def seed_catalog(session: AsyncSession) -> None:
    """Idempotently writes the permission catalog and the seed roles.

    Permissions missing from the table are inserted. A seed role receives its
    default permission set only when it is first created; later edits made by
    administrators are left alone.
    """
    existing = {p.key: p for p in (await session.exec(select(Permission))).all()}
    for key in PERMISSION_CATALOG:
        if key not in existing:
            permission = Permission(task_name=key.task, action=key.action, description=CATALOG_DESCRIPTIONS[key])
            session.add(permission)
            existing[key] = permission
    await session.flush()

    for seed in ROLE_SEEDS:
        role = (await session.exec(select(Role).where(Role.seed_key == seed.key))).first()
        if role:
            continue

        # Adopt a pre-existing role of the same name instead of colliding with it
        role = (await session.exec(select(Role).where(Role.name == seed.name))).first()
        if role:
            role.seed_key = seed.key
            session.add(role)
            continue

        role = Role(name=seed.name, description=seed.description, seed_key=seed.key)
        session.add(role)
        await session.flush()
        for key in seed.permissions:
            session.add(RolePermission(role_id=role.id, permission_id=existing[key].id))
        logger.info(f"Seeded role '{seed.name}' with {len(seed.permissions)} permissions.")

    await session.commit()


async def ensure_bootstrap_admin(session: AsyncSession, username: str | None, password: str | None) -> None:
    """Creates the configured bootstrap administrator if it does not exist yet."""
    if not username or not password:
        return

    if (await session.exec(select(User).where(User.username == username))).first():
        return

    admin_role = (await session.exec(select(Role).where(Role.seed_key == ADMINISTRATOR))).first()
    if not admin_role:
        logger.error("Administrator role missing. Run seed_catalog() before bootstrapping an admin.")
        return

    user = User(username=username, password_hash=hash_password(password), real_name="Administrator")
    session.add(user)
    await session.flush()
    session.add(UserRole(user_id=user.id, role_id=admin_role.id))
    await session.commit()
    logger.info(f"Bootstrapped administrator account '{username}'.")
