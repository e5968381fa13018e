from datetime import UTC, datetime, timedelta
from functools import lru_cache

import bcrypt
import jwt
from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from pydantic import BaseModel, ValidationError

from qatrack.config.settings import settings
from qatrack.core.exceptions import InvalidToken, MissingToken

# Parses "Authorization: Bearer <token>"; absence is reported by us, not by FastAPI
bearer_scheme = HTTPBearer(auto_error=False)

# bcrypt only looks at the first 72 bytes and newer releases reject longer input
_BCRYPT_MAX_BYTES = 72


def _encode_password(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int | None = None) -> str:
    """Hashes a password with a per-call random salt.

    Args:
        password: The plaintext password.
        rounds: The bcrypt cost factor. Defaults to ``settings.BCRYPT_ROUNDS``.

    Returns:
        str: The modular-crypt bcrypt hash.
    """
    salt = bcrypt.gensalt(rounds=rounds or settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(_encode_password(password), salt).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    """Checks a password against a stored hash.

    A missing hash is compared against a throwaway hash of the same cost so
    that an unknown account costs as much time as a wrong password.
    """
    if password_hash is None:
        bcrypt.checkpw(_encode_password(password), _dummy_hash().encode("utf-8"))
        return False

    try:
        return bcrypt.checkpw(_encode_password(password), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash.")
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password("qatrack-timing-equalizer")


class SessionIdentity(BaseModel):
    """Identity asserted by a verified session token."""

    id: int
    username: str


class SessionIssuer:
    """Signs and verifies stateless bearer session tokens.

    Tokens carry ``{id, username}`` plus ``iat``/``exp``. Roles and permissions
    are deliberately absent: they are resolved per request so a revoked grant
    stops working on the very next call.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", ttl_minutes: int = 720) -> None:
        if not secret:
            raise ValueError("A session signing secret is required.")
        self.secret = secret
        self.algorithm = algorithm
        self.ttl = timedelta(minutes=ttl_minutes)

    def issue(self, user_id: int, username: str) -> str:
        now = datetime.now(UTC)
        payload = {"id": user_id, "username": username, "iat": now, "exp": now + self.ttl}
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> SessionIdentity:
        """Verifies the signature and expiry of a token and extracts its identity.

        Raises:
            InvalidToken: If the signature, expiry or payload shape is wrong.
        """
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidToken("Session expired") from e
        except jwt.InvalidTokenError as e:
            raise InvalidToken() from e

        try:
            return SessionIdentity.model_validate(payload)
        except ValidationError as e:
            raise InvalidToken() from e


session_issuer = SessionIssuer(
    secret=settings.SESSION_SECRET,
    algorithm=settings.SESSION_ALGORITHM,
    ttl_minutes=settings.SESSION_TTL_MINUTES,
)


def get_session_issuer() -> SessionIssuer:
    """Retrieves the process-wide session issuer.

    Returns:
        SessionIssuer: The issuer bound to the configured signing secret.
    """
    return session_issuer


async def get_current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> SessionIdentity:
    """Decodes the bearer token and attaches the identity to the request state.

    Raises:
        MissingToken: If no bearer token accompanies the request.
        InvalidToken: If the token fails verification.
    """
    if credentials is None or not credentials.credentials:
        raise MissingToken()

    identity = get_session_issuer().decode(credentials.credentials)
    request.state.identity = identity
    return identity
