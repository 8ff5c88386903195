"""
Identity sessions.

The chat server trusts an ambient session token (cookie or bearer header)
to know who is calling. Session tokens are plain HS256 JWTs signed with
the server's session secret.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from aiohttp import web
from loguru import logger

ALGORITHM = "HS256"
SESSION_COOKIE = "rolechat_session"


@dataclass
class SessionIdentity:
    """
    Identity resolved from a session token.

    Attributes:
        email: User identity key
        name: Display name
        image: Avatar URL (optional)
        jti: Token id
        expires_at: Expiration timestamp
    """
    email: str
    name: str
    image: Optional[str]
    jti: str
    expires_at: datetime


class SessionManager:
    """Creates and verifies session tokens."""

    def __init__(self, secret: str, ttl: timedelta = timedelta(hours=24)):
        self.secret = secret
        self.ttl = ttl

    def create(self, email: str, name: str = "", image: Optional[str] = None) -> str:
        """
        Create a session token.

        Args:
            email: User identity key
            name: Display name
            image: Avatar URL

        Returns:
            JWT token string
        """
        now = datetime.now(timezone.utc)
        payload = {
            "sub": email,
            "name": name,
            "image": image,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
            "type": "session",
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> Optional[SessionIdentity]:
        """
        Verify and decode a session token.

        Args:
            token: JWT token string

        Returns:
            SessionIdentity if valid, None if invalid
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            logger.warning("Session token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid session token: {e}")
            return None

        if payload.get("type") != "session" or not payload.get("sub"):
            logger.warning("Token is not a session token")
            return None

        return SessionIdentity(
            email=payload["sub"],
            name=payload.get("name") or "",
            image=payload.get("image"),
            jti=payload.get("jti", ""),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def identify(self, request: web.Request) -> Optional[SessionIdentity]:
        """
        Resolve the caller's identity from a request.

        Looks at the Authorization bearer header first, then the session
        cookie.

        Args:
            request: Incoming request

        Returns:
            SessionIdentity, or None for anonymous callers
        """
        auth_header = request.headers.get("Authorization", "")
        token = None
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
        elif SESSION_COOKIE in request.cookies:
            token = request.cookies[SESSION_COOKIE]

        if not token:
            return None
        return self.verify(token)
