#!/usr/bin/env python3
"""
HTTP client for the rolechat server.

Stores the session token on disk, fetches realtime credentials and
calls the user and role management routes.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from loguru import logger

from ..errors import UpstreamServiceError


class ChatApiClient:
    """
    Client for the rolechat HTTP API.

    Manages the session token and wraps every route in one method.
    """

    def __init__(
        self,
        base_url: str,
        session_token: Optional[str] = None,
        token_file: Optional[Path] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize client.

        Args:
            base_url: Server base URL (e.g. http://localhost:8080)
            session_token: Session token (if None, loaded from token_file)
            token_file: Path to file storing the session token (optional)
            session: Shared aiohttp session (optional)
        """
        self.base_url = base_url.rstrip("/")
        self.token_file = token_file
        self._token = session_token
        self._session = session
        self._owns_session = session is None

    # ========================================================================
    # Session token storage
    # ========================================================================

    def load_token(self) -> Optional[str]:
        """
        Load session token from file.

        Returns:
            Session token, or None if there is no token file
        """
        if self.token_file is None or not self.token_file.exists():
            return None

        try:
            data = json.loads(self.token_file.read_text())
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load session token: {e}")
            return None
        self._token = data.get("session_token")
        return self._token

    def save_token(self, token: str) -> None:
        """Save session token to file with owner-only permissions."""
        self._token = token
        if self.token_file is None:
            return
        self.token_file.parent.mkdir(parents=True, exist_ok=True)
        self.token_file.write_text(json.dumps({"session_token": token}, indent=2))
        self.token_file.chmod(0o600)  # rw-------
        logger.info(f"Session token saved to {self.token_file}")

    def clear_token(self) -> None:
        """Remove stored token."""
        self._token = None
        if self.token_file is not None and self.token_file.exists():
            self.token_file.unlink()
            logger.info("Session token cleared")

    def get_token(self) -> Optional[str]:
        if self._token is None:
            self._token = self.load_token()
        return self._token

    # ========================================================================
    # Requests
    # ========================================================================

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        headers = {}
        token = self.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with self._get_session().request(
                method, f"{self.base_url}{path}", params=params, json=json_body, headers=headers
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError as e:
                    raise UpstreamServiceError(
                        f"{method} {path} returned a malformed body: {e}", resp.status
                    ) from e
                return resp.status, body
        except aiohttp.ClientError as e:
            raise UpstreamServiceError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _check(status: int, body: Any, what: str) -> Any:
        if isinstance(body, dict) and "error" in body:
            raise UpstreamServiceError(f"{what}: {body['error']}", status)
        if status >= 400:
            raise UpstreamServiceError(f"{what}: HTTP {status}", status)
        return body

    async def sign_in(
        self,
        email: str,
        first_name: str = "",
        last_name: str = "",
        image: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Sign in through the development route and store the session token.

        Returns:
            The synced user
        """
        status, body = await self._request("POST", "/api/auth/signin", json_body={
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "image": image,
        })
        body = self._check(status, body, "Sign-in failed")
        self.save_token(body["token"])
        logger.success(f"Signed in as {email}")
        return body["user"]

    async def fetch_realtime_token(self) -> Optional[str]:
        """
        Fetch a fresh realtime access token.

        Returns:
            Token string, or None when the server issued no credential
        """
        status, body = await self._request("GET", "/api/ably")
        body = self._check(status, body, "Token request failed")
        if not body:
            logger.warning("No realtime credential issued, not connecting")
            return None
        return body["token"]

    async def get_users(self) -> List[Dict[str, Any]]:
        status, body = await self._request("GET", "/api/permit/getUsers")
        return self._check(status, body, "Listing users failed")["users"]

    async def get_user(self) -> Dict[str, Any]:
        status, body = await self._request("GET", "/api/permit/getUser")
        return self._check(status, body, "Fetching user failed")["user"]

    async def list_resource_instances(self) -> List[Dict[str, Any]]:
        status, body = await self._request("GET", "/api/permit/resourceInstances")
        return self._check(status, body, "Listing resource instances failed")

    async def promote(self, user_key: str, channel: str) -> Dict[str, Any]:
        """
        Promote a user to moderator of a channel.

        Args:
            user_key: User to promote
            channel: Channel name (e.g. "chat:general")

        Returns:
            Per-step results
        """
        status, body = await self._request(
            "GET", "/api/permit/promoteUser", params={"key": user_key, "channel": channel}
        )
        return self._check(status, body, "Failed to promote user")["data"]

    async def demote(self, user_key: str, channel: str) -> Dict[str, Any]:
        status, body = await self._request(
            "GET", "/api/permit/demoteUser", params={"key": user_key, "channel": channel}
        )
        return self._check(status, body, "Failed to demote user")["data"]

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
