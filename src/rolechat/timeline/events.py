"""
Typed channel events.

Raw transport messages are parsed into one of four event variants
(AddEvent, DeleteEvent, PromoteEvent, DemoteEvent) right at the boundary,
then dispatched to independent subscribers through an EventBus.

Raw message shape (as delivered live or from history):
    {"id": ..., "clientId": ..., "name": "ADD", "data": {...},
     "extras": {"ref": {...}, "timeserial": ...}, "timestamp": 1700000000000}
"""

import asyncio
import inspect
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


class EventName(str, Enum):
    """Message name tags used on chat channels."""
    ADD = "ADD"
    DELETE = "DELETE"
    PROMOTE = "PROMOTE"
    DEMOTE = "DEMOTE"


class ChatPayload(BaseModel):
    """Payload of an ADD message."""
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    avatar_url: Optional[str] = Field(None, alias="avatarUrl")


class RoleChangePayload(BaseModel):
    """Payload of PROMOTE and DEMOTE messages."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str = ""
    avatar_url: Optional[str] = Field(None, alias="avatarUrl")
    role: str


class MessageRef(BaseModel):
    """Reference from a DELETE message to the message it removes."""
    id: Optional[str] = None
    timeserial: Optional[str] = None


class InboundMessage(BaseModel):
    """A message as delivered by the transport."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    client_id: Optional[str] = Field(None, alias="clientId")
    name: str
    data: Any = None
    extras: Dict[str, Any] = {}
    timestamp: Optional[int] = None
    timeserial: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        if values.get("encoding") == "json" and isinstance(values.get("data"), str):
            values["data"] = json.loads(values["data"])
        extras = values.get("extras") or {}
        if not values.get("timeserial"):
            values["timeserial"] = extras.get("timeserial") or values.get("serial")
        return values

    @property
    def ref(self) -> Optional[MessageRef]:
        ref = (self.extras or {}).get("ref")
        return MessageRef.model_validate(ref) if ref else None


@dataclass(frozen=True)
class AddEvent:
    message: InboundMessage
    payload: ChatPayload


@dataclass(frozen=True)
class DeleteEvent:
    message: InboundMessage
    ref: MessageRef


@dataclass(frozen=True)
class PromoteEvent:
    message: InboundMessage
    payload: RoleChangePayload


@dataclass(frozen=True)
class DemoteEvent:
    message: InboundMessage
    payload: RoleChangePayload


ChannelEvent = Union[AddEvent, DeleteEvent, PromoteEvent, DemoteEvent]


def parse_event(raw: Union[Dict[str, Any], InboundMessage]) -> Optional[ChannelEvent]:
    """
    Parse a raw transport message into a typed event.

    Args:
        raw: Raw message dict or already parsed InboundMessage

    Returns:
        Typed event, or None for unknown names and malformed messages
    """
    try:
        message = raw if isinstance(raw, InboundMessage) else InboundMessage.model_validate(raw)
        name = EventName(message.name)

        if name is EventName.ADD:
            return AddEvent(message, ChatPayload.model_validate(message.data or {}))
        if name is EventName.DELETE:
            ref = message.ref
            if ref is None or not (ref.id or ref.timeserial):
                raise ValueError("DELETE message without a ref")
            return DeleteEvent(message, ref)
        if name is EventName.PROMOTE:
            return PromoteEvent(message, RoleChangePayload.model_validate(message.data or {}))
        return DemoteEvent(message, RoleChangePayload.model_validate(message.data or {}))

    except (ValidationError, ValueError) as e:
        logger.warning(f"Ignoring malformed channel message: {e}")
        return None


Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """
    Dispatches typed events to subscribers registered per event type.

    Coroutine handlers are scheduled as tasks on the running loop; the bus
    keeps track of them so they can be awaited or cancelled.
    """

    def __init__(self):
        self._subscribers: Dict[Type, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Type, handler: Handler) -> Callable[[], None]:
        """
        Register a handler for one event type.

        Returns:
            Function that removes the subscription
        """
        handlers = self._subscribers.setdefault(event_type, [])
        handlers.append(handler)

        def unsubscribe():
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def dispatch(self, event: ChannelEvent) -> None:
        for handler in list(self._subscribers.get(type(event), [])):
            try:
                result = handler(event)
            except Exception as e:
                logger.opt(exception=e).error(f"Subscriber failed on {type(event).__name__}: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            e = task.exception()
            logger.opt(exception=e).error(f"Subscriber task failed: {e}")

    async def drain(self) -> None:
        """Wait for all scheduled handler tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._subscribers.clear()
