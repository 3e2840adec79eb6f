import logging
from collections.abc import Callable
from datetime import datetime, timedelta

import bcrypt
import jwt

from filedrop.errors import UnauthorizedError, ValidationError
from filedrop.repository import ConfigRepository, utc_now

logger = logging.getLogger(__name__)

PASSWORD_HASH_KEY = "password_hash"
MIN_PASSWORD_LENGTH = 6
# bcrypt only reads the first 72 bytes.
MAX_PASSWORD_BYTES = 72
TOKEN_TTL = timedelta(days=7)
TOKEN_ALGORITHM = "HS256"
TOKEN_SUBJECT = "filedrop-admin"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


class PasswordAuth:
    """Single shared password, stored as a bcrypt hash; sessions are signed JWTs."""

    def __init__(
        self,
        config: ConfigRepository,
        secret_key: str,
        *,
        token_ttl: timedelta = TOKEN_TTL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.secret_key = secret_key
        self.token_ttl = token_ttl
        self.clock = clock

    def _issue_token(self) -> str:
        now = self.clock()
        payload = {
            "sub": TOKEN_SUBJECT,
            "iat": int(now.timestamp()),
            "exp": int((now + self.token_ttl).timestamp()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=TOKEN_ALGORITHM)

    def is_password_set(self) -> bool:
        return bool(self.config.get(PASSWORD_HASH_KEY))

    def set_password(self, password: str) -> str:
        if self.is_password_set():
            raise ValidationError("password is already set")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
        self.config.set(PASSWORD_HASH_KEY, hash_password(password))
        logger.info("access password configured")
        return self._issue_token()

    def login(self, password: str) -> str:
        stored = self.config.get(PASSWORD_HASH_KEY)
        if not stored:
            raise UnauthorizedError("password has not been set")
        if not check_password(password, stored):
            raise UnauthorizedError("invalid password")
        return self._issue_token()

    def verify(self, token: str | None) -> bool:
        if not token or not self.is_password_set():
            return False
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[TOKEN_ALGORITHM],
                # Expiry is checked below against the injected clock.
                options={"require": ["exp", "sub"], "verify_exp": False},
            )
        except jwt.PyJWTError:
            return False
        if payload["exp"] <= self.clock().timestamp():
            return False
        return payload["sub"] == TOKEN_SUBJECT
