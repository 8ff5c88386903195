"""
Realtime channel transports.

ChannelTransport is the client's view of one pub/sub channel: publish,
read history and subscribe to live messages. Two implementations:

- LocalChannel: in-process channel log shared through a LocalHub, used
  for tests and demos. It enforces the capability of the access token it
  was connected with.
- AblyRestChannel: the hosted realtime service, over its REST API for
  publish/history and its SSE endpoint for live messages.
"""

import asyncio
import itertools
import json
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import aiohttp
from loguru import logger

from ..auth.models import AccessTokenClaims, Action, Capability
from ..errors import NotAuthenticatedError, PermissionDeniedError, UpstreamServiceError

Listener = Callable[[Dict[str, Any]], None]
TokenProvider = Callable[[], Awaitable[Optional[str]]]


class ChannelTransport(ABC):
    """Client view of one realtime channel."""

    name: str
    client_id: Optional[str] = None

    @abstractmethod
    async def publish(
        self,
        name: str,
        data: Any = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Publish a message, returning what the transport acknowledged."""

    @abstractmethod
    async def history(self, limit: int = 100, direction: str = "backwards") -> List[Dict[str, Any]]:
        """Read up to limit messages in the given direction."""

    @abstractmethod
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Deliver live messages to listener; returns an unsubscribe function."""

    async def close(self) -> None:
        """Release transport resources."""


class LocalHub:
    """In-process pub/sub: one ordered log and listener list per channel."""

    def __init__(self):
        self._logs: Dict[str, List[Dict[str, Any]]] = {}
        self._listeners: Dict[str, List[Listener]] = {}
        self._serials = itertools.count(1)

    def channel(
        self,
        name: str,
        client_id: Optional[str] = None,
        claims: Optional[AccessTokenClaims] = None,
    ) -> "LocalChannel":
        """
        Connect to a channel.

        Args:
            name: Channel name
            client_id: Client identity (ignored when claims are given)
            claims: Verified access token claims; enables capability checks

        Returns:
            LocalChannel
        """
        return LocalChannel(self, name, client_id, claims)

    def log(self, name: str) -> List[Dict[str, Any]]:
        return self._logs.setdefault(name, [])

    def _append(self, name: str, message: Dict[str, Any]) -> Dict[str, Any]:
        serial = next(self._serials)
        message = {
            **message,
            "id": message.get("id") or uuid.uuid4().hex,
            "timestamp": int(time.time() * 1000),
            "timeserial": f"{serial:012d}",
        }
        self.log(name).append(message)
        for listener in list(self._listeners.get(name, [])):
            listener(message)
        return message

    def _subscribe(self, name: str, listener: Listener) -> Callable[[], None]:
        listeners = self._listeners.setdefault(name, [])
        listeners.append(listener)

        def unsubscribe():
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe


class LocalChannel(ChannelTransport):
    """Channel on a LocalHub."""

    def __init__(
        self,
        hub: LocalHub,
        name: str,
        client_id: Optional[str] = None,
        claims: Optional[AccessTokenClaims] = None,
    ):
        self.hub = hub
        self.name = name
        self.claims = claims
        self.client_id = claims.client_id if claims else client_id

    def _require(self, action: Action) -> None:
        if self.claims is None:
            return
        capability: Capability = self.claims.capability
        if not capability.allows(self.name, action.value):
            raise PermissionDeniedError(self.client_id or "anonymous", action.value, self.name)

    async def publish(
        self,
        name: str,
        data: Any = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self._require(Action.PUBLISH)
        message = {"name": name, "clientId": self.client_id, "data": data, "extras": extras or {}}
        return self.hub._append(self.name, message)

    async def history(self, limit: int = 100, direction: str = "backwards") -> List[Dict[str, Any]]:
        self._require(Action.HISTORY)
        log = self.hub.log(self.name)
        if direction == "forwards":
            return [dict(m) for m in log[:limit]]
        return [dict(m) for m in reversed(log[-limit:])]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._require(Action.SUBSCRIBE)
        return self.hub._subscribe(self.name, listener)


class AblyRestChannel(ChannelTransport):
    """
    Channel on the hosted realtime service.

    The access token comes from token_provider (normally the server's
    token endpoint) and is refetched once when the service rejects it.
    A dropped or refused live stream is reopened with a fresh token and
    exponential backoff; once reconnect_attempts consecutive attempts
    fail, the subscription ends and on_error is called.
    """

    def __init__(
        self,
        name: str,
        token_provider: TokenProvider,
        rest_url: str = "https://rest.ably.io",
        realtime_url: str = "https://realtime.ably.io",
        session: Optional[aiohttp.ClientSession] = None,
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ):
        self.name = name
        self.token_provider = token_provider
        self.rest_url = rest_url.rstrip("/")
        self.realtime_url = realtime_url.rstrip("/")
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.on_error = on_error
        self._session = session
        self._owns_session = session is None
        self._token: Optional[str] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def _messages_url(self) -> str:
        return f"{self.rest_url}/channels/{quote(self.name, safe='')}/messages"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _get_token(self, refresh: bool = False) -> str:
        if self._token is None or refresh:
            self._token = await self.token_provider()
        if not self._token:
            raise NotAuthenticatedError("No realtime credential available")
        return self._token

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        session = self._get_session()
        for refresh in (False, True):
            token = await self._get_token(refresh)
            async with session.request(
                method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
            ) as resp:
                if resp.status == 401 and not refresh:
                    logger.debug(f"[{self.name}] Token rejected, refetching")
                    continue
                if resp.status >= 400:
                    raise UpstreamServiceError(
                        f"{method} {url} returned {resp.status}: {await resp.text()}", resp.status
                    )
                if resp.content_type != "application/json":
                    return None
                try:
                    return await resp.json()
                except ValueError as e:
                    raise UpstreamServiceError(
                        f"{method} {url} returned a malformed body: {e}", resp.status
                    ) from e
        raise UpstreamServiceError(f"{method} {url} rejected the refreshed token", 401)

    async def publish(
        self,
        name: str,
        data: Any = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        message: Dict[str, Any] = {"name": name}
        if data is not None:
            message["data"] = json.dumps(data)
            message["encoding"] = "json"
        if extras:
            message["extras"] = extras
        ack = await self._request("POST", self._messages_url, json=message)
        return {**message, **(ack or {})}

    async def history(self, limit: int = 100, direction: str = "backwards") -> List[Dict[str, Any]]:
        items = await self._request(
            "GET", self._messages_url, params={"limit": str(limit), "direction": direction}
        )
        return items or []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        task = asyncio.ensure_future(self._listen(listener))
        task.add_done_callback(self._listen_done)
        self._tasks.append(task)

        def unsubscribe():
            task.cancel()

        return unsubscribe

    def _listen_done(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logger.opt(exception=error).error(f"[{self.name}] Live subscription ended: {error}")
        if self.on_error is not None:
            self.on_error(error)

    async def _listen(self, listener: Listener) -> None:
        """Keep the SSE stream open, reconnecting with a fresh token when it drops."""
        attempt = 0
        error: BaseException
        while True:
            try:
                received = await self._stream(listener, refresh=attempt > 0)
                error = UpstreamServiceError("SSE stream closed by the service")
            except (UpstreamServiceError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                received = 0
                error = e

            if received:
                attempt = 0
            attempt += 1
            if attempt > self.reconnect_attempts:
                raise UpstreamServiceError(f"Live subscription lost: {error}") from error

            delay = self.reconnect_delay * 2 ** (attempt - 1)
            logger.warning(
                f"[{self.name}] Live stream interrupted ({error}), "
                f"reconnect {attempt}/{self.reconnect_attempts} in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    async def _stream(self, listener: Listener, refresh: bool) -> int:
        """
        Read one SSE connection until it ends.

        Returns:
            Number of messages handed to listener
        """
        session = self._get_session()
        token = await self._get_token(refresh)
        params = {"v": "1.2", "channels": self.name, "accessToken": token}
        stream_timeout = aiohttp.ClientTimeout(total=None, sock_read=None)
        received = 0
        async with session.get(f"{self.realtime_url}/sse", params=params, timeout=stream_timeout) as resp:
            if resp.status >= 400:
                raise UpstreamServiceError(f"SSE connection failed: {resp.status}", resp.status)
            logger.info(f"[{self.name}] Live subscription established")
            async for raw_line in resp.content:
                line = raw_line.decode("utf-8").strip()
                if not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if not payload:
                    continue
                try:
                    message = json.loads(payload)
                except json.JSONDecodeError as e:
                    logger.warning(f"[{self.name}] Invalid SSE payload: {e}")
                    continue
                received += 1
                listener(message)
        return received

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
