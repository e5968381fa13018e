from typing import Annotated

from fastapi import APIRouter, Depends, status
from loguru import logger
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.app.schemas import (
    EnrollIn,
    LoginIn,
    LoginOut,
    MessageOut,
    PermissionOut,
    RegisterIn,
    SendCodeIn,
    TwoFactorStatusOut,
    UserOut,
    UserSummary,
    VerifyCodeIn,
)
from qatrack.core.database import get_session
from qatrack.core.exceptions import Forbidden
from qatrack.core.notifications import send_sms
from qatrack.core.security import SessionIdentity, SessionIssuer, get_current_identity, get_session_issuer
from qatrack.domain.users.credentials import CredentialStore
from qatrack.domain.users.models import Action, PermissionKey, Task
from qatrack.domain.users.resolver import PermissionResolver
from qatrack.domain.users.two_factor import SmsSender, TwoFactorGate

router = APIRouter(prefix="/auth", tags=["Authentication"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
IdentityDep = Annotated[SessionIdentity, Depends(get_current_identity)]


def get_sms_sender() -> SmsSender:
    """Provides the SMS dispatcher used for one-time codes."""
    return send_sms


def get_two_factor_gate(
    session: SessionDep,
    issuer: Annotated[SessionIssuer, Depends(get_session_issuer)],
    sms: Annotated[SmsSender, Depends(get_sms_sender)],
) -> TwoFactorGate:
    return TwoFactorGate(session, issuer, sms=sms)


GateDep = Annotated[TwoFactorGate, Depends(get_two_factor_gate)]


async def _login(payload: LoginIn, gate: TwoFactorGate) -> LoginOut:
    outcome = await gate.begin_login(payload.username, payload.password)
    if outcome.requires_2fa:
        return LoginOut(
            requires_2fa=True,
            user_id=outcome.user_id,
            message="2FA code sent to your phone number",
        )
    return LoginOut(token=outcome.token, user=UserSummary(id=outcome.user_id, username=payload.username.strip()))


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterIn, session: SessionDep) -> UserSummary:
    """Creates a password-only account with no roles.

    Raises:
        Conflict: If the username or email is taken.
    """
    user = await CredentialStore(session).register(
        payload.username, payload.password, real_name=payload.real_name, email=payload.email
    )
    return UserSummary(id=user.id, username=user.username)


@router.post("/login")
async def login(payload: LoginIn, gate: GateDep) -> LoginOut:
    """Password login. Users enrolled in 2FA receive a code challenge instead of a token."""
    return await _login(payload, gate)


@router.post("/login-2fa")
async def login_2fa(payload: LoginIn, gate: GateDep) -> LoginOut:
    """Password login for clients that handle the 2FA challenge explicitly."""
    return await _login(payload, gate)


@router.post("/2fa/enroll")
async def enroll_2fa(payload: EnrollIn, identity: IdentityDep, session: SessionDep, gate: GateDep) -> MessageOut:
    """Stores a phone number and enables 2FA. The client follows with ``/2fa/send-code``.

    Users enroll themselves. Enrolling another account requires ``administration:write``.
    """
    target_id = payload.user_id if payload.user_id is not None else identity.id
    if target_id != identity.id:
        admin_write = PermissionKey(Task.ADMINISTRATION, Action.WRITE)
        if not await PermissionResolver(session).has_all(identity.id, [admin_write]):
            logger.warning(f"Forbidden: user {identity.id} tried to enroll user {target_id} in 2FA")
            raise Forbidden()

    await gate.enroll(target_id, payload.phone_number)
    return MessageOut(message="2FA enrolled successfully")


@router.post("/2fa/send-code")
async def send_code(payload: SendCodeIn, gate: GateDep) -> MessageOut:
    await gate.send_code(payload.user_id)
    return MessageOut(message="2FA code sent successfully")


@router.post("/2fa/verify")
async def verify_code(payload: VerifyCodeIn, gate: GateDep, session: SessionDep) -> LoginOut:
    """Consumes the one-time code and issues a session token.

    Raises:
        NoValidCode: If no live code exists for the user.
        InvalidCode: If the code does not match.
    """
    token = await gate.verify_code(payload.user_id, payload.code)
    user = await CredentialStore(session).get(payload.user_id)
    return LoginOut(token=token, user=UserSummary(id=user.id, username=user.username))


@router.get("/2fa/status")
async def two_factor_status(identity: IdentityDep, gate: GateDep, session: SessionDep) -> TwoFactorStatusOut:
    state = await gate.state(identity.id)
    user = await CredentialStore(session).get(identity.id)
    return TwoFactorStatusOut(user_id=identity.id, state=state, is_2fa_enabled=user.is_2fa_enabled)


@router.get("/user")
async def current_user(identity: IdentityDep, session: SessionDep) -> UserOut:
    user = await CredentialStore(session).get(identity.id)
    return UserOut.model_validate(user)


@router.get("/user/permissions")
async def current_user_permissions(identity: IdentityDep, session: SessionDep) -> list[PermissionOut]:
    """Returns the caller's effective permissions (roles and direct grants combined)."""
    permissions = await PermissionResolver(session).effective_permissions(identity.id)
    return [PermissionOut.from_key(key) for key in sorted(permissions)]
