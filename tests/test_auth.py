"""Tests for authentication: rate limiting, credentials, and login tokens."""

import bcrypt
import pytest

from termgate.auth import (
    AuthError,
    AuthManager,
    RateLimiter,
    STATIC_SECRET_IDENTITY,
    create_auth_manager,
)
from termgate.config import AuthConfig


def make_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=4)).decode()


@pytest.fixture
def auth_config():
    return AuthConfig(
        enabled=True,
        allowed_identities=["alice"],
        static_secret="correct horse",
        session_timeout_hours=1,
        users={
            "alice": {"password_hash": make_hash("wonderland")},
            "bob": {"password_hash": make_hash("builder")},
            "broken": {"password_hash": "not-a-bcrypt-hash"},
        },
    )


@pytest.fixture
def auth_manager(auth_config, clock):
    return AuthManager(auth_config, clock=clock)


class TestRateLimiter:

    def test_blocks_after_max_attempts(self, clock):
        limiter = RateLimiter(max_attempts=3, window_minutes=15, clock=clock)
        for _ in range(3):
            assert not limiter.is_blocked("alice", "10.0.0.1")
            limiter.record_failure("alice", "10.0.0.1")

        assert limiter.is_blocked("alice", "10.0.0.1")
        assert limiter.get_remaining_attempts("alice", "10.0.0.1") == 0

    def test_blocks_by_ip_across_usernames(self, clock):
        limiter = RateLimiter(max_attempts=2, clock=clock)
        limiter.record_failure("alice", "10.0.0.1")
        limiter.record_failure("bob", "10.0.0.1")
        assert limiter.is_blocked("carol", "10.0.0.1")
        assert not limiter.is_blocked("carol", "10.0.0.2")

    def test_username_is_case_insensitive(self, clock):
        limiter = RateLimiter(max_attempts=2, clock=clock)
        limiter.record_failure("Alice", "10.0.0.1")
        limiter.record_failure("ALICE", "10.0.0.2")
        assert limiter.is_blocked("alice", "10.0.0.3")

    def test_window_expires(self, clock):
        limiter = RateLimiter(max_attempts=2, window_minutes=15, clock=clock)
        limiter.record_failure("alice", "10.0.0.1")
        limiter.record_failure("alice", "10.0.0.1")
        assert limiter.get_lockout_remaining_seconds("alice", "10.0.0.1") == 15 * 60

        clock.advance(minutes=10)
        assert limiter.get_lockout_remaining_seconds("alice", "10.0.0.1") == 5 * 60

        clock.advance(minutes=6)
        assert not limiter.is_blocked("alice", "10.0.0.1")
        assert limiter.get_remaining_attempts("alice", "10.0.0.1") == 2

    def test_success_clears_failures(self, clock):
        limiter = RateLimiter(max_attempts=5, clock=clock)
        limiter.record_failure("alice", "10.0.0.1")
        limiter.clear_on_success("alice", "10.0.0.1")
        assert limiter.get_remaining_attempts("alice", "10.0.0.1") == 5
        assert limiter.get_lockout_remaining_seconds("alice", "10.0.0.1") == 0


class TestCredentials:

    def test_password(self, auth_manager):
        assert auth_manager.authenticate("alice", "wonderland")
        assert not auth_manager.authenticate("alice", "wrong")
        assert not auth_manager.authenticate("nobody", "wonderland")
        assert not auth_manager.authenticate("", "")

    def test_invalid_stored_hash(self, auth_manager):
        assert not auth_manager.authenticate("broken", "anything")

    def test_static_secret(self, auth_manager):
        assert auth_manager.static_secret_configured
        assert auth_manager.authenticate_static_secret("correct horse")
        assert not auth_manager.authenticate_static_secret("battery staple")
        assert not auth_manager.authenticate_static_secret("")

    def test_static_secret_not_configured(self, clock):
        manager = AuthManager(AuthConfig(enabled=True, static_secret="  "), clock=clock)
        assert not manager.static_secret_configured
        assert not manager.authenticate_static_secret("  ")

    def test_allow_list(self, auth_manager):
        assert auth_manager.is_allowed("alice")
        assert not auth_manager.is_allowed("bob")
        assert auth_manager.is_allowed(STATIC_SECRET_IDENTITY)

    def test_empty_allow_list_admits_everyone(self, clock):
        manager = AuthManager(AuthConfig(enabled=True), clock=clock)
        assert manager.is_allowed("anyone")


class TestTokens:

    def test_create_and_validate(self, auth_manager):
        token = auth_manager.create_session("alice")
        assert auth_manager.validate_session(token) == "alice"
        assert auth_manager.verify(token) == "alice"

    def test_tokens_expire(self, auth_manager, clock):
        token = auth_manager.create_session("alice")
        clock.advance(hours=2)
        assert auth_manager.validate_session(token) is None

    def test_destroy(self, auth_manager):
        token = auth_manager.create_session("alice")
        auth_manager.destroy_session(token)
        with pytest.raises(AuthError, match="Authentication failed"):
            auth_manager.verify(token)

    def test_cleanup_expired(self, auth_manager, clock):
        auth_manager.create_session("alice")
        clock.advance(minutes=45)
        fresh = auth_manager.create_session("alice")
        clock.advance(minutes=30)

        assert auth_manager.cleanup_expired_sessions() == 1
        assert auth_manager.validate_session(fresh) == "alice"

    def test_verify_requires_credential(self, auth_manager):
        with pytest.raises(AuthError, match="Authentication required"):
            auth_manager.verify(None)

    def test_verify_rejects_identity_removed_from_allow_list(self, auth_manager, auth_config):
        token = auth_manager.create_session("alice")
        auth_config.allowed_identities.remove("alice")
        auth_config.allowed_identities.append("carol")
        with pytest.raises(AuthError):
            auth_manager.verify(token)


def test_create_auth_manager_disabled():
    assert create_auth_manager(AuthConfig(enabled=False)) is None


def test_create_auth_manager_enabled():
    assert isinstance(create_auth_manager(AuthConfig(enabled=True)), AuthManager)
