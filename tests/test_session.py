"""
Unit tests for identity session tokens.
"""

from datetime import timedelta

import jwt
from aiohttp.test_utils import make_mocked_request

from rolechat.auth.session import SESSION_COOKIE, SessionManager


class TestSessionManager:
    """Test session token creation and verification."""

    def test_create_and_verify(self, sessions):
        """A fresh token verifies to the same identity."""
        token = sessions.create("alice@example.com", "Alice Liddell", "https://img/alice.png")

        identity = sessions.verify(token)

        assert identity is not None
        assert identity.email == "alice@example.com"
        assert identity.name == "Alice Liddell"
        assert identity.image == "https://img/alice.png"
        assert identity.jti

    def test_unique_jti(self, sessions):
        """Every session gets its own token id."""
        first = sessions.verify(sessions.create("alice@example.com"))
        second = sessions.verify(sessions.create("alice@example.com"))

        assert first.jti != second.jti

    def test_wrong_secret(self, sessions):
        """Tokens signed with another secret are rejected."""
        other = SessionManager("another-session-secret-0123456789-abcdef")
        token = other.create("alice@example.com")

        assert sessions.verify(token) is None

    def test_expired(self):
        """Expired sessions are rejected."""
        manager = SessionManager("test-session-secret-0123456789-abcdefghij", ttl=timedelta(seconds=-1))
        token = manager.create("alice@example.com")

        assert manager.verify(token) is None

    def test_not_a_session_token(self, sessions):
        """Tokens without the session type are rejected."""
        token = jwt.encode({"sub": "alice@example.com"}, sessions.secret, algorithm="HS256")

        assert sessions.verify(token) is None


class TestIdentify:
    """Test request identity resolution."""

    def test_bearer_header(self, sessions):
        """Identity is read from the Authorization header."""
        token = sessions.create("alice@example.com")
        request = make_mocked_request("GET", "/", headers={"Authorization": f"Bearer {token}"})

        assert sessions.identify(request).email == "alice@example.com"

    def test_cookie(self, sessions):
        """Identity is read from the session cookie."""
        token = sessions.create("bob@example.com")
        request = make_mocked_request("GET", "/", headers={"Cookie": f"{SESSION_COOKIE}={token}"})

        assert sessions.identify(request).email == "bob@example.com"

    def test_anonymous(self, sessions):
        """No token means no identity."""
        request = make_mocked_request("GET", "/")

        assert sessions.identify(request) is None

    def test_invalid_token(self, sessions):
        """A broken token means no identity."""
        request = make_mocked_request("GET", "/", headers={"Authorization": "Bearer garbage"})

        assert sessions.identify(request) is None
