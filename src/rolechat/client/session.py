"""
Client chat session.

A ChatSession connects one user to one channel: it feeds the channel's
live messages into an EventBus, backfills the timeline, and keeps the
member list and the user's own permissions current whenever a role
change notice arrives.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from loguru import logger

from ..auth.models import Role
from ..errors import RoleChatError
from ..timeline.events import DemoteEvent, EventBus, EventName, PromoteEvent, parse_event
from ..timeline.reconciler import TimelineEntry, TimelineReconciler
from ..timeline.transport import ChannelTransport
from .api_client import ChatApiClient

DEFAULT_AVATAR_BASE_URL = "https://www.tapback.co/api/avatar"


class _RefreshingView(ABC):
    """
    State refetched from the server on every role change notice.

    Each refresh takes a generation number; a response that resolves after
    a newer refresh started, or after close, is discarded.
    """

    def __init__(self, api: ChatApiClient):
        self.api = api
        self.closed = False
        self._generation = 0
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self, bus: EventBus) -> None:
        self._unsubscribers.extend([
            bus.subscribe(PromoteEvent, self.handle_role_change),
            bus.subscribe(DemoteEvent, self.handle_role_change),
        ])

    async def handle_role_change(self, event) -> None:
        await self.refresh()

    async def refresh(self) -> bool:
        """
        Refetch from the server.

        Returns:
            True if the fetched state was applied
        """
        if self.closed:
            return False
        self._generation += 1
        generation = self._generation
        try:
            result = await self._fetch()
        except RoleChatError as e:
            logger.warning(f"{type(self).__name__} refresh failed: {e}")
            return False
        if self.closed or generation != self._generation:
            return False
        self._apply(result)
        return True

    @abstractmethod
    async def _fetch(self) -> Any:
        """Fetch the current state from the server."""

    @abstractmethod
    def _apply(self, result: Any) -> None:
        """Replace the local state with a fetched result."""

    def close(self) -> None:
        self.closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()


class MembershipView(_RefreshingView):
    """Tenant members other than the current user, with their roles."""

    def __init__(self, api: ChatApiClient, current_user_key: Optional[str]):
        super().__init__(api)
        self.current_user_key = current_user_key
        self.users: List[Dict[str, Any]] = []

    async def _fetch(self) -> List[Dict[str, Any]]:
        return await self.api.get_users()

    def _apply(self, users: List[Dict[str, Any]]) -> None:
        self.users = [u for u in users if u.get("key") != self.current_user_key]

    def find(self, user_key: str) -> Optional[Dict[str, Any]]:
        for user in self.users:
            if user.get("key") == user_key:
                return user
        return None


class SelfPermissionView(_RefreshingView):
    """The current user's own record and whether they may promote others."""

    def __init__(self, api: ChatApiClient):
        super().__init__(api)
        self.user: Optional[Dict[str, Any]] = None

    @property
    def can_promote(self) -> bool:
        if not self.user:
            return False
        return any(r.get("role") == Role.MODERATOR.value for r in self.user.get("roles", []))

    async def _fetch(self) -> Dict[str, Any]:
        return await self.api.get_user()

    def _apply(self, user: Dict[str, Any]) -> None:
        self.user = user


class ChatSession:
    """
    One user's session on one chat channel.

    Usage:
        session = ChatSession(api, transport, user_key="alice@example.com")
        await session.start()
        await session.send("hello")
        ...
        await session.close()
    """

    def __init__(
        self,
        api: ChatApiClient,
        transport: ChannelTransport,
        user_key: str,
        avatar_url: Optional[str] = None,
        avatar_base_url: str = DEFAULT_AVATAR_BASE_URL,
        history_limit: Optional[int] = None,
    ):
        """
        Initialize session.

        Args:
            api: Server API client
            transport: Connected channel transport
            user_key: Current user key (also the realtime client id)
            avatar_url: Avatar URL attached to sent messages (default: generated)
            avatar_base_url: Base URL of generated avatars in role change notices
            history_limit: History backfill size (default: reconciler default)
        """
        self.api = api
        self.transport = transport
        self.user_key = user_key
        self.avatar_base_url = avatar_base_url.rstrip("/")
        self.avatar_url = avatar_url or f"{self.avatar_base_url}/{user_key}"

        self.bus = EventBus()
        if history_limit is None:
            self.timeline = TimelineReconciler(transport.name)
        else:
            self.timeline = TimelineReconciler(transport.name, history_limit)
        self.members = MembershipView(api, user_key)
        self.permissions = SelfPermissionView(api)

        self._unsubscribe: Optional[Callable[[], None]] = None
        self._backfill_task: Optional[asyncio.Task] = None

    @property
    def channel(self) -> str:
        return self.transport.name

    def _on_message(self, raw: Dict[str, Any]) -> None:
        event = parse_event(raw)
        if event is not None:
            self.bus.dispatch(event)

    async def start(self) -> None:
        """Subscribe to live messages, start the backfill, load members and permissions."""
        self.timeline.attach(self.bus)
        self.members.attach(self.bus)
        self.permissions.attach(self.bus)

        self._unsubscribe = self.transport.subscribe(self._on_message)
        self._backfill_task = asyncio.ensure_future(self._backfill())

        await asyncio.gather(self.members.refresh(), self.permissions.refresh())
        logger.info(f"[{self.channel}] Session started for {self.user_key}")

    async def _backfill(self) -> None:
        try:
            await self.timeline.backfill(self.transport)
        except (RoleChatError, aiohttp.ClientError) as e:
            logger.warning(f"[{self.channel}] History unavailable, continuing live only: {e}")
            self.timeline.go_live()

    async def wait_ready(self) -> None:
        """Wait until the history backfill has finished."""
        if self._backfill_task is not None:
            await asyncio.shield(self._backfill_task)

    @property
    def messages(self) -> List[TimelineEntry]:
        return self.timeline.messages

    async def send(self, text: str) -> Dict[str, Any]:
        """Publish a chat message."""
        return await self.transport.publish(
            EventName.ADD.value, {"text": text, "avatarUrl": self.avatar_url}
        )

    async def delete(self, entry: TimelineEntry) -> Dict[str, Any]:
        """
        Publish a delete for one of the current user's messages.

        The delete only takes effect on receivers when the sender matches
        the original message's sender.
        """
        return await self.transport.publish(
            EventName.DELETE.value,
            extras={"ref": {"id": entry.id, "timeserial": entry.timeserial}},
        )

    async def promote_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """
        Promote a user on this channel and announce it.

        Args:
            user: User dict as listed by the members view

        Returns:
            Per-step results from the server
        """
        result = await self.api.promote(user["key"], self.channel)
        await self.transport.publish(EventName.PROMOTE.value, {
            "id": user["key"],
            "text": f"User {_display_name(user)} has been promoted to moderator",
            "avatarUrl": f"{self.avatar_base_url}/{user['key']}",
            "role": Role.MODERATOR.value,
        })
        logger.success(f"[{self.channel}] Promoted {user['key']}")
        return result

    async def demote_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Demote a user on this channel and announce it."""
        result = await self.api.demote(user["key"], self.channel)
        await self.transport.publish(EventName.DEMOTE.value, {
            "id": user["key"],
            "text": f"User {_display_name(user)} has been demoted from moderator",
            "avatarUrl": f"{self.avatar_base_url}/{user['key']}",
            "role": Role.PARTICIPANT.value,
        })
        logger.success(f"[{self.channel}] Demoted {user['key']}")
        return result

    async def close(self) -> None:
        """Tear down; responses still in flight are discarded."""
        self.timeline.close()
        self.members.close()
        self.permissions.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._backfill_task is not None and not self._backfill_task.done():
            self._backfill_task.cancel()
        self.bus.close()
        await self.transport.close()
        logger.info(f"[{self.channel}] Session closed for {self.user_key}")


def _display_name(user: Dict[str, Any]) -> str:
    name = " ".join(p for p in (user.get("first_name"), user.get("last_name")) if p)
    return name or user.get("email") or user["key"]
