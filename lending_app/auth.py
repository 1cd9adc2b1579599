"""User registration, login and bearer token management.

Passwords are stored as salted PBKDF2-SHA256 hashes in the form
``pbkdf2_sha256$<iterations>$<salt hex>$<digest hex>``. Tokens are random
hex strings from ``secrets`` kept in the ``auth_tokens`` table with an
expiry; the HTTP layer expects them as ``Authorization: Bearer <token>``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from .config import Settings, settings
from .database import Database
from .errors import EmailAlreadyRegistered, InvalidCredentials, InvalidCredentialsFormat, InvalidToken
from .models import User, utcnow
from .repositories import StoreSession
from .utils.validators import EmailValidator

logger = logging.getLogger(__name__)

_HASH_SCHEME = "pbkdf2_sha256"


def hash_password(password: str, iterations: Optional[int] = None) -> str:
    iterations = iterations or settings.password_hash_iterations
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"{_HASH_SCHEME}${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        scheme, iterations, salt_hex, digest_hex = password_hash.split("$")
        if scheme != _HASH_SCHEME:
            return False
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)


class AuthService:
    def __init__(
        self,
        database: Database,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.config = config or settings
        self.clock = clock

    def _validate(self, email: str, password: str) -> str:
        email = EmailValidator.normalize_email(email)
        if not EmailValidator.is_valid_email(email):
            raise InvalidCredentialsFormat("A valid email address is required")
        if not password or len(password) < self.config.min_password_length:
            raise InvalidCredentialsFormat(
                f"Password must be at least {self.config.min_password_length} characters long"
            )
        return email

    def _issue_token(self, store: StoreSession, user_id: int) -> str:
        # Generate a token that isn't already in use
        while True:
            token = secrets.token_hex(32)
            if not store.tokens.exists(token):
                break
        expires_at = self.clock() + timedelta(minutes=self.config.token_expiration_minutes)
        store.tokens.create(token, user_id, expires_at)
        return token

    def register(self, email: str, password: str) -> Tuple[User, str]:
        """Create a user and log them in. Emails are unique, case-insensitively."""
        email = self._validate(email, password)
        password_hash = hash_password(password, self.config.password_hash_iterations)
        with self.database.transaction() as conn:
            store = StoreSession(conn)
            if store.users.get_by_email(email) is not None:
                raise EmailAlreadyRegistered()
            user = store.users.create(User(email=email, password_hash=password_hash))
            token = self._issue_token(store, user.id)
        logger.info(f"User registered: id={user.id}")
        return user, token

    def login(self, email: str, password: str) -> Tuple[User, str]:
        email = EmailValidator.normalize_email(email)
        with self.database.transaction() as conn:
            store = StoreSession(conn)
            user = store.users.get_by_email(email)
            # same error for unknown email and wrong password
            if user is None or not verify_password(password or "", user.password_hash):
                logger.info("Login failed: invalid credentials")
                raise InvalidCredentials()
            store.tokens.purge_expired(self.clock())
            token = self._issue_token(store, user.id)
        logger.info(f"User logged in: id={user.id}")
        return user, token

    def resolve_token(self, token: str) -> int:
        """Return the id of the user owning ``token``."""
        if not token:
            raise InvalidToken()
        with self.database.connect() as conn:
            user_id = StoreSession(conn).tokens.get_user_id(token, self.clock())
        if user_id is None:
            raise InvalidToken()
        return user_id

    def logout(self, token: str) -> bool:
        """Revoke a token. Returns True if the token existed."""
        with self.database.connect() as conn:
            return StoreSession(conn).tokens.delete(token)
