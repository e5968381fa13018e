import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.config.settings import settings
from qatrack.core.exceptions import (
    Conflict,
    InvalidCode,
    NotFound,
    NoValidCode,
    PhoneNumberMissing,
    SmsDispatchError,
    ValidationFailed,
)
from qatrack.core.notifications import send_sms
from qatrack.core.security import SessionIssuer
from qatrack.core.utils import as_utc, utcnow
from qatrack.domain.users.credentials import CredentialStore
from qatrack.domain.users.models import TwoFactorCode, User

SmsSender = Callable[[str, str], Awaitable[bool]]

CODE_DIGITS = 6


class TwoFactorState(StrEnum):
    DISABLED = "disabled"
    # Enrolled but no live code yet; recovered by send-code
    ENROLLED_AWAITING_CODE = "enrolled_awaiting_code"
    CODE_PENDING = "code_pending"


@dataclass(frozen=True)
class LoginOutcome:
    """Result of a password login. Exactly one of ``token`` or ``requires_2fa`` is set."""

    user_id: int
    requires_2fa: bool
    token: str | None = None


def generate_code() -> str:
    """Uniformly random, zero-padded numeric one-time code."""
    return f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"


class TwoFactorGate:
    """Interposes an SMS one-time code between password check and session issuance.

    Each user holds at most one live code. Issuing a code overwrites the previous
    one in a single keyed upsert, and verifying consumes it with a conditional
    delete, so two concurrent verifiers can never both succeed.
    """

    def __init__(
        self,
        session: AsyncSession,
        issuer: SessionIssuer,
        sms: SmsSender | None = None,
        clock: Callable[[], datetime] = utcnow,
        code_ttl_seconds: int | None = None,
    ) -> None:
        self.session = session
        self.issuer = issuer
        self.sms = sms or send_sms
        self.clock = clock
        self.code_ttl = timedelta(seconds=code_ttl_seconds or settings.TWO_FACTOR_CODE_TTL_SECONDS)
        self.credentials = CredentialStore(session)

    async def begin_login(self, username: str, password: str) -> LoginOutcome:
        """Verifies the password and either issues a session or starts the code step.

        Raises:
            InvalidCredentials: On unknown username or wrong password.
            SmsDispatchError: If the code was stored but could not be delivered. The error
                carries the challenge (``user_id``) so the client can resend.
        """
        user = await self.credentials.verify(username, password)

        if not user.is_2fa_enabled:
            logger.info(f"User {user.id} logged in with password only.")
            return LoginOutcome(user_id=user.id, requires_2fa=False, token=self.issuer.issue(user.id, user.username))

        await self._issue_code(user)
        return LoginOutcome(user_id=user.id, requires_2fa=True)

    async def send_code(self, user_id: int) -> None:
        """Generates and dispatches a fresh code, superseding any unconsumed one.

        Raises:
            NotFound: If the user does not exist or has 2FA disabled.
            PhoneNumberMissing: If the user has no phone number on file.
            SmsDispatchError: If the gateway did not accept the message.
        """
        user = await self.session.get(User, user_id)
        if not user or not user.is_2fa_enabled:
            raise NotFound("User not found or 2FA not enabled")
        await self._issue_code(user)

    resend_code = send_code

    async def verify_code(self, user_id: int, code: str) -> str:
        """Consumes a matching live code and returns a session token.

        Raises:
            NoValidCode: If there is no unexpired code, or a concurrent verifier consumed it first.
            InvalidCode: If the submitted code does not match.
        """
        now = as_utc(self.clock())
        row = (
            await self.session.exec(
                select(TwoFactorCode.code, TwoFactorCode.expires_at).where(TwoFactorCode.user_id == user_id)
            )
        ).first()

        if row is None or as_utc(row.expires_at) <= now:
            logger.warning(f"2FA verification for user {user_id} without a live code.")
            raise NoValidCode()

        if not secrets.compare_digest(row.code.encode(), code.encode()):
            logger.warning(f"2FA verification for user {user_id} failed: code mismatch.")
            raise InvalidCode()

        result = await self.session.exec(
            delete(TwoFactorCode).where(
                TwoFactorCode.user_id == user_id,
                TwoFactorCode.code == row.code,
                TwoFactorCode.expires_at > now,
            )
        )
        await self.session.commit()
        if result.rowcount != 1:
            raise NoValidCode()

        user = await self.session.get(User, user_id)
        if not user:
            raise NoValidCode()

        logger.info(f"User {user_id} completed 2FA verification.")
        return self.issuer.issue(user.id, user.username)

    async def enroll(self, user_id: int, phone_number: str) -> User:
        """Stores the phone number and enables 2FA without sending a code.

        The user is left in ``ENROLLED_AWAITING_CODE`` until ``send_code`` runs.

        Raises:
            NotFound: If the user does not exist.
            ValidationFailed: If the phone number is blank.
            Conflict: If another user already registered this phone number.
        """
        user = await self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")

        phone_number = phone_number.strip()
        if not phone_number:
            raise ValidationFailed("Phone number is required")
        owner = (await self.session.exec(select(User).where(User.phone_number == phone_number))).first()
        if owner and owner.id != user_id:
            raise Conflict("A user with this phone number already exists")

        user.phone_number = phone_number
        user.is_2fa_enabled = True
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise Conflict("A user with this phone number already exists") from e

        await self.session.refresh(user)
        logger.info(f"User {user_id} enrolled in 2FA.")
        return user

    async def state(self, user_id: int) -> TwoFactorState:
        user = await self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        if not user.is_2fa_enabled:
            return TwoFactorState.DISABLED

        live = (
            await self.session.exec(
                select(TwoFactorCode.user_id).where(
                    TwoFactorCode.user_id == user_id,
                    TwoFactorCode.expires_at > as_utc(self.clock()),
                )
            )
        ).first()
        return TwoFactorState.CODE_PENDING if live is not None else TwoFactorState.ENROLLED_AWAITING_CODE

    async def reset(self, user_id: int) -> None:
        """Returns the user to password-only login, dropping phone and pending code."""
        user = await self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")

        user.phone_number = None
        user.is_2fa_enabled = False
        self.session.add(user)
        await self.session.exec(delete(TwoFactorCode).where(TwoFactorCode.user_id == user_id))
        await self.session.commit()
        logger.info(f"2FA reset for user {user_id}")

    async def _issue_code(self, user: User) -> None:
        if not user.phone_number:
            raise PhoneNumberMissing()

        code = generate_code()
        stmt = sqlite_insert(TwoFactorCode).values(
            user_id=user.id,
            code=code,
            expires_at=self.clock() + self.code_ttl,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[TwoFactorCode.user_id],
            set_={"code": stmt.excluded.code, "expires_at": stmt.excluded.expires_at},
        )
        await self.session.exec(stmt)
        # Persist before dispatch so a gateway failure can be retried with resend
        await self.session.commit()
        logger.info(f"Issued 2FA code for user {user.id}")

        minutes = int(self.code_ttl.total_seconds() // 60)
        delivered = await self.sms(
            user.phone_number,
            f"Your QA Tracker verification code is: {code}. This code will expire in {minutes} minutes.",
        )
        if not delivered:
            raise SmsDispatchError(user_id=user.id)
