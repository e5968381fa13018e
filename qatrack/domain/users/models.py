from datetime import datetime
from enum import StrEnum
from typing import NamedTuple

from sqlalchemy import DateTime
from sqlmodel import Field, Relationship, SQLModel, UniqueConstraint

from qatrack.core.utils import utcnow


class Task(StrEnum):
    """Closed set of authorizable areas of the application."""

    TESTSUITE_MANAGEMENT = "testsuite_management"
    TEST_MANAGEMENT = "test_management"
    TESTSUITE_EXECUTION = "testsuite_execution"
    TEST_EXECUTION = "test_execution"
    ADMINISTRATION = "administration"


class Action(StrEnum):
    """Closed set of operations that can be granted on a task."""

    READ = "read"
    WRITE = "write"
    APPROVE = "approve"
    DELETE = "delete"


class PermissionKey(NamedTuple):
    """Value identity of a permission, independent of its database row."""

    task: Task
    action: Action

    def __str__(self) -> str:
        return f"{self.task.value}:{self.action.value}"


# --- Join tables ---


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: int = Field(foreign_key="roles.id", primary_key=True, ondelete="CASCADE")
    permission_id: int = Field(foreign_key="permissions.id", primary_key=True, index=True, ondelete="CASCADE")


class UserRole(SQLModel, table=True):
    """Assignment of a role to a user. Replaced wholesale, never patched."""

    __tablename__ = "user_roles"

    user_id: int = Field(foreign_key="users.id", primary_key=True, ondelete="CASCADE")
    # RESTRICT: an assigned role must be unassigned before it can be deleted
    role_id: int = Field(foreign_key="roles.id", primary_key=True, index=True, ondelete="RESTRICT")


class UserPermission(SQLModel, table=True):
    """Direct grant of a permission to a user, bypassing roles."""

    __tablename__ = "user_permissions"

    user_id: int = Field(foreign_key="users.id", primary_key=True, ondelete="CASCADE")
    permission_id: int = Field(foreign_key="permissions.id", primary_key=True, index=True, ondelete="CASCADE")


# --- Entities ---


class Permission(SQLModel, table=True):
    """An atomic capability. Seeded at startup and immutable afterwards."""

    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("task_name", "action", name="uq_permission_task_action"),)

    id: int | None = Field(default=None, primary_key=True)
    # Stored as plain values; the enums validate at the edges
    task_name: str = Field(index=True, max_length=32)
    action: str = Field(max_length=16)
    description: str | None = None

    @property
    def key(self) -> PermissionKey:
        return PermissionKey(Task(self.task_name), Action(self.action))


class Role(SQLModel, table=True):
    """A named bundle of permissions."""

    __tablename__ = "roles"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True, max_length=50)
    description: str | None = Field(default=None, max_length=200)
    # Stable identifier for roles created by the seeder; None for admin-created roles
    seed_key: str | None = Field(default=None, unique=True)

    permissions: list[Permission] = Relationship(link_model=RolePermission)


class User(SQLModel, table=True):
    """Represents a system user authenticated by username and password."""

    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True)
    password_hash: str
    real_name: str | None = None
    email: str | None = Field(default=None, unique=True)
    phone_number: str | None = Field(default=None, unique=True)
    is_2fa_enabled: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    roles: list[Role] = Relationship(link_model=UserRole)
    direct_permissions: list[Permission] = Relationship(link_model=UserPermission)


class TwoFactorCode(SQLModel, table=True):
    """The single live one-time code of a user. Keyed by user so a new code overwrites the old one."""

    __tablename__ = "user_2fa_codes"

    user_id: int = Field(foreign_key="users.id", primary_key=True, ondelete="CASCADE")
    code: str
    expires_at: datetime = Field(sa_type=DateTime(timezone=True))
