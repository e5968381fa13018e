from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from qatrack.domain.users.catalog import CATALOG_DESCRIPTIONS
from qatrack.domain.users.models import Action, PermissionKey, Task
from qatrack.domain.users.two_factor import TwoFactorState

PASSWORD_MIN_LENGTH = 6

# Length limits apply after surrounding whitespace is removed
PhoneNumber = Annotated[str, StringConstraints(strip_whitespace=True, min_length=4, max_length=32)]
RoleName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=50)]


class MessageOut(BaseModel):
    message: str


# --- Authentication ---


class RegisterIn(BaseModel):
    username: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=150)]
    password: str = Field(min_length=PASSWORD_MIN_LENGTH)
    real_name: str | None = None
    email: str | None = None


class LoginIn(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class UserSummary(BaseModel):
    id: int
    username: str


class LoginOut(BaseModel):
    """Either a session token, or a challenge telling the client to collect a code."""

    requires_2fa: bool = False
    token: str | None = None
    user: UserSummary | None = None
    user_id: int | None = None
    message: str | None = None


class EnrollIn(BaseModel):
    phone_number: PhoneNumber
    # Defaults to the caller; enrolling someone else needs administration:write
    user_id: int | None = None


class SendCodeIn(BaseModel):
    user_id: int


class VerifyCodeIn(BaseModel):
    user_id: int
    code: str = Field(min_length=1, max_length=16)


class TwoFactorStatusOut(BaseModel):
    user_id: int
    state: TwoFactorState
    is_2fa_enabled: bool


# --- Users & permissions ---


class PermissionIn(BaseModel):
    """A (task, action) pair. Values outside the closed sets fail validation."""

    task_name: Task
    action: Action


class PermissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    task_name: Task
    action: Action
    description: str | None = None

    @classmethod
    def from_key(cls, key: PermissionKey) -> "PermissionOut":
        return cls(task_name=key.task, action=key.action, description=CATALOG_DESCRIPTIONS.get(key))


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    real_name: str | None = None
    email: str | None = None
    phone_number: str | None = None
    is_2fa_enabled: bool
    created_at: datetime


class UserListItem(UserOut):
    roles: list[str] = []


class UserDetailOut(UserListItem):
    role_ids: list[int] = []
    direct_permissions: list[PermissionOut] = []


class ResetPasswordIn(BaseModel):
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH)


class UpdateInfoIn(BaseModel):
    real_name: str | None = None
    email: str | None = None


class AssignRolesIn(BaseModel):
    role_ids: list[int]


class AssignPermissionsIn(BaseModel):
    permissions: list[PermissionIn]


# --- Roles ---


class RoleIn(BaseModel):
    name: RoleName
    description: str | None = Field(default=None, max_length=200)
    permissions: list[PermissionIn] = []


class RoleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    permissions: list[PermissionOut] = []
