from loguru import logger
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
from starlette.concurrency import run_in_threadpool

from qatrack.core.exceptions import Conflict, InvalidCredentials, NotFound, SelfDeactivation, ValidationFailed
from qatrack.core.security import hash_password, verify_password
from qatrack.domain.users.models import TwoFactorCode, User, UserPermission, UserRole


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class CredentialStore:
    """Owns user records and password verification.

    bcrypt runs in the threadpool so a slow hash never stalls the event loop.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: int) -> User:
        user = await self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    async def register(
        self,
        username: str,
        password: str,
        real_name: str | None = None,
        email: str | None = None,
    ) -> User:
        """Creates a user with a salted password hash.

        Raises:
            ValidationFailed: If the username is blank.
            Conflict: If the username or email is already taken.
        """
        username = username.strip()
        if not username:
            raise ValidationFailed("Username is required")
        email = _blank_to_none(email)

        if (await self.session.exec(select(User).where(User.username == username))).first():
            raise Conflict("Username already exists")
        if email and (await self.session.exec(select(User).where(User.email == email))).first():
            raise Conflict("A user with this email already exists")

        password_hash = await run_in_threadpool(hash_password, password)
        user = User(
            username=username,
            password_hash=password_hash,
            real_name=_blank_to_none(real_name),
            email=email,
        )
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError as e:
            # Lost a race against a concurrent registration
            await self.session.rollback()
            raise Conflict("Username already exists") from e

        await self.session.refresh(user)
        logger.info(f"Registered user '{username}' (id={user.id})")
        return user

    async def verify(self, username: str, password: str) -> User:
        """Returns the user iff the password matches.

        Unknown usernames still pay for a full bcrypt comparison, so both
        failure modes look the same from the outside.

        Raises:
            InvalidCredentials: On unknown username or wrong password.
        """
        user = (await self.session.exec(select(User).where(User.username == username.strip()))).first()
        stored_hash = user.password_hash if user else None

        if not await run_in_threadpool(verify_password, password, stored_hash) or user is None:
            logger.warning("Rejected login attempt: invalid credentials.")
            raise InvalidCredentials()
        return user

    async def reset_password(self, user_id: int, new_password: str) -> None:
        user = await self.get(user_id)
        user.password_hash = await run_in_threadpool(hash_password, new_password)
        self.session.add(user)
        await self.session.commit()
        logger.info(f"Password reset for user {user_id}")

    async def update_info(self, user_id: int, real_name: str | None, email: str | None) -> User:
        """Replaces the user's real name and email. Blank values clear the field.

        Raises:
            NotFound: If the user does not exist.
            Conflict: If another user already owns the email.
        """
        user = await self.get(user_id)
        email = _blank_to_none(email)

        if email:
            owner = (await self.session.exec(select(User).where(User.email == email))).first()
            if owner and owner.id != user_id:
                raise Conflict("A user with this email already exists")

        user.real_name = _blank_to_none(real_name)
        user.email = email
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise Conflict("A user with this email already exists") from e

        await self.session.refresh(user)
        return user

    async def deactivate(self, user_id: int, acting_user_id: int) -> None:
        """Hard-deletes a user together with its assignments and pending codes.

        Raises:
            SelfDeactivation: If a user tries to remove their own account.
            NotFound: If the user does not exist.
        """
        if user_id == acting_user_id:
            raise SelfDeactivation()

        await self.get(user_id)

        try:
            await self.session.exec(delete(UserRole).where(UserRole.user_id == user_id))
            await self.session.exec(delete(UserPermission).where(UserPermission.user_id == user_id))
            await self.session.exec(delete(TwoFactorCode).where(TwoFactorCode.user_id == user_id))
            await self.session.exec(delete(User).where(User.id == user_id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"User {user_id} deactivated by user {acting_user_id}")
