"""
Authentication for the terminal gateway.

Supports:
  - Local users with bcrypt-hashed passwords (``auth.users`` in the config file)
  - A shared static secret (``auth.static_secret``)
  - An allow-list of identities permitted to connect
  - Server-side login tokens, presented as a cookie, bearer header,
    or ``token`` query parameter on the WebSocket
  - Rate limiting for brute force protection

When ``auth.enabled`` is false, no AuthManager is created and every
connection is anonymous.
"""

import hmac
import logging
import secrets
from collections import defaultdict
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Callable, Optional

import bcrypt

from termgate.config import AuthConfig

logger = logging.getLogger(__name__)

STATIC_SECRET_IDENTITY = "static-secret-user"

RATE_LIMIT_MAX_ATTEMPTS = 50
RATE_LIMIT_WINDOW_MINUTES = 15


@lru_cache(maxsize=1)
def _dummy_hash() -> bytes:
    """Hash checked for unknown users so a miss costs as much as a hit."""
    return bcrypt.hashpw(b"dummy", bcrypt.gensalt(rounds=12))


class AuthError(Exception):
    """A credential was missing, invalid, expired, or not allowed."""


class RateLimiter:
    """
    Blocks login attempts after too many failures.

    Failures are counted separately per username and per client IP; either
    one reaching the limit inside the window blocks the attempt.
    """

    def __init__(self, max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
                 window_minutes: int = RATE_LIMIT_WINDOW_MINUTES,
                 clock: Callable[[], datetime] = datetime.now):
        self._max_attempts = max_attempts
        self._window = timedelta(minutes=window_minutes)
        self._clock = clock
        self._failures: dict[str, list[datetime]] = defaultdict(list)

    @staticmethod
    def _keys(username: str, ip_address: str) -> tuple[str, str]:
        return f"user:{username.lower()}", f"ip:{ip_address}"

    def _recent(self, key: str) -> list[datetime]:
        cutoff = self._clock() - self._window
        recent = [t for t in self._failures.get(key, []) if t > cutoff]
        if recent:
            self._failures[key] = recent
        else:
            self._failures.pop(key, None)
        return recent

    def is_blocked(self, username: str, ip_address: str) -> bool:
        return any(
            len(self._recent(key)) >= self._max_attempts
            for key in self._keys(username, ip_address)
        )

    def record_failure(self, username: str, ip_address: str) -> None:
        now = self._clock()
        for key in self._keys(username, ip_address):
            self._recent(key)
            self._failures[key].append(now)

    def clear_on_success(self, username: str, ip_address: str) -> None:
        for key in self._keys(username, ip_address):
            self._failures.pop(key, None)

    def get_remaining_attempts(self, username: str, ip_address: str) -> int:
        used = max(len(self._recent(key)) for key in self._keys(username, ip_address))
        return max(0, self._max_attempts - used)

    def get_lockout_remaining_seconds(self, username: str, ip_address: str) -> int:
        """Seconds until the oldest failure in the window ages out (0 if not locked)."""
        if not self.is_blocked(username, ip_address):
            return 0
        oldest = min(
            min(attempts)
            for attempts in (self._recent(k) for k in self._keys(username, ip_address))
            if attempts
        )
        remaining = (oldest + self._window - self._clock()).total_seconds()
        return max(0, int(remaining))


class AuthManager:
    """
    Verifies credentials and manages login tokens.

    Authentication flow:
        1. Client posts username + password to /login (or the shared
           secret to /auth/static-secret)
        2. authenticate() / authenticate_static_secret() checks it
        3. is_allowed() checks the identity against the allow-list
        4. create_session() returns a random token
        5. verify() checks the token when a WebSocket attaches

    Tokens live in server memory only; restarting logs everyone out.
    """

    def __init__(self, config: AuthConfig, clock: Callable[[], datetime] = datetime.now):
        self._config = config
        self._clock = clock
        self._sessions: dict[str, dict] = {}  # token -> {identity, created_at}
        self._timeout = timedelta(hours=config.session_timeout_hours)
        logger.info("Authentication enabled: %d local user(s), %d allowed identities",
                    len(config.users), len(config.allowed_identities))
        if config.static_secret:
            logger.info("Static secret authentication configured")

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str) -> bool:
        """Check a username/password against the local users."""
        users = self._config.users or {}
        if not username or not password or username not in users:
            bcrypt.checkpw((password or "dummy").encode("utf-8"), _dummy_hash())
            return False

        stored_hash = (users[username] or {}).get("password_hash", "")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
        except (ValueError, TypeError):
            logger.warning("Invalid password hash for local user '%s'", username)
            return False

    @property
    def static_secret_configured(self) -> bool:
        return bool(self._config.static_secret and self._config.static_secret.strip())

    def authenticate_static_secret(self, secret: str) -> bool:
        if not self.static_secret_configured or not secret:
            return False
        return hmac.compare_digest(secret.encode("utf-8"),
                                   self._config.static_secret.encode("utf-8"))

    def is_allowed(self, identity: str) -> bool:
        """An empty allow-list admits every authenticated identity."""
        if identity == STATIC_SECRET_IDENTITY:
            return True
        allowed = self._config.allowed_identities
        return not allowed or identity in allowed

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def create_session(self, identity: str) -> str:
        """Create a login token for ``identity``."""
        token = secrets.token_urlsafe(32)
        self._sessions[token] = {
            "identity": identity,
            "created_at": self._clock(),
        }
        logger.info("Login session created for '%s'", identity)
        return token

    def validate_session(self, token: str) -> Optional[str]:
        """Return the identity for a valid token, None otherwise.

        Expired tokens are removed on sight.
        """
        if not token:
            return None
        session = self._sessions.get(token)
        if not session:
            return None
        if self._clock() - session["created_at"] > self._timeout:
            del self._sessions[token]
            return None
        return session["identity"]

    def destroy_session(self, token: str) -> None:
        self._sessions.pop(token, None)

    def cleanup_expired_sessions(self) -> int:
        """Remove all expired tokens. Returns count removed."""
        now = self._clock()
        expired = [
            tok for tok, sess in self._sessions.items()
            if now - sess["created_at"] > self._timeout
        ]
        for tok in expired:
            del self._sessions[tok]
        return len(expired)

    def verify(self, credential: Optional[str]) -> str:
        """
        Turn a presented credential into an identity.

        Raises:
            AuthError: the credential is missing, unknown, expired, or its
                identity is no longer on the allow-list.
        """
        if not credential:
            raise AuthError("Authentication required")
        identity = self.validate_session(credential)
        if identity is None:
            raise AuthError("Authentication failed")
        if not self.is_allowed(identity):
            logger.warning("Identity '%s' is not in the allowed list", identity)
            raise AuthError("Authentication failed")
        return identity


def create_auth_manager(config: AuthConfig) -> Optional[AuthManager]:
    """
    Create an AuthManager if authentication is enabled.

    Returns None if auth is disabled (localhost-only mode).
    """
    if not config.enabled:
        return None
    if not config.users and not config.static_secret:
        logger.warning("Authentication enabled but no users or static secret configured")
    return AuthManager(config)
