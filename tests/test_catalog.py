import unittest

from sqlmodel import func, select

from qatrack.domain.users.catalog import (
    ADMINISTRATOR,
    CATALOG_DESCRIPTIONS,
    PERMISSION_CATALOG,
    TEST_MANAGER,
    ensure_bootstrap_admin,
    is_cataloged,
    lookup_permissions,
    seed_catalog,
)
from qatrack.domain.users.models import Action, Permission, PermissionKey, Role, RolePermission, Task, User
from qatrack.domain.users.resolver import PermissionResolver
from tests.base import BaseTest


class TestCatalog(BaseTest):
    """Test suite for catalog seeding and lookup."""

    async def count(self, model) -> int:
        async with self.test_session_maker() as session:
            return (await session.exec(select(func.count()).select_from(model))).one()

    def test_catalog_is_the_full_cross_product(self) -> None:
        self.assertEqual(len(PERMISSION_CATALOG), 20)
        admin_read = PermissionKey(Task.ADMINISTRATION, Action.READ)
        self.assertEqual(CATALOG_DESCRIPTIONS[admin_read], "View administration panel")
        self.assertEqual(CATALOG_DESCRIPTIONS[PermissionKey(Task.TEST_MANAGEMENT, Action.WRITE)], "Create/edit tests")
        self.assertTrue(is_cataloged("test_execution", "approve"))
        self.assertFalse(is_cataloged("test_execution", "execute"))

    async def test_seeding_is_idempotent(self) -> None:
        before = (await self.count(Permission), await self.count(Role), await self.count(RolePermission))

        async with self.test_session_maker() as session:
            await seed_catalog(session)

        after = (await self.count(Permission), await self.count(Role), await self.count(RolePermission))
        self.assertEqual(before, after)
        self.assertEqual(before[:2], (20, 4))

    async def test_reseeding_keeps_admin_edits_to_seed_roles(self) -> None:
        manager = await self.seed_role(TEST_MANAGER)
        async with self.test_session_maker() as session:
            manager = await session.get(Role, manager.id)
            manager.name = "QA Lead"
            session.add(manager)
            await session.commit()

            await seed_catalog(session)

        async with self.test_session_maker() as session:
            names = set((await session.exec(select(Role.name))).all())
        self.assertIn("QA Lead", names)
        self.assertNotIn("Test Manager", names)

    async def test_lookup_ignores_unknown_pairs(self) -> None:
        async with self.test_session_maker() as session:
            rows = await lookup_permissions(session, [("administration", "read"), ("nope", "read")])

        self.assertEqual([p.key for p in rows], [PermissionKey(Task.ADMINISTRATION, Action.READ)])

    async def test_bootstrap_admin_holds_every_permission(self) -> None:
        async with self.test_session_maker() as session:
            await ensure_bootstrap_admin(session, "root", "root-password")
            await ensure_bootstrap_admin(session, "root", "root-password")

        async with self.test_session_maker() as session:
            admins = (await session.exec(select(User).where(User.username == "root"))).all()
            self.assertEqual(len(admins), 1)
            effective = await PermissionResolver(session).effective_permissions(admins[0].id)

        self.assertEqual(effective, frozenset(PERMISSION_CATALOG))
        self.assertIsNotNone(await self.seed_role(ADMINISTRATOR))

    async def test_bootstrap_admin_is_skipped_without_credentials(self) -> None:
        async with self.test_session_maker() as session:
            await ensure_bootstrap_admin(session, None, None)

        self.assertEqual(await self.count(User), 0)


if __name__ == "__main__":
    unittest.main()
