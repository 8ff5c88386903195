"""
Client-side channel timeline.

Typed channel events, the event bus, the timeline reconciler and the
realtime transports it reads from.
"""

from .events import (
    AddEvent,
    ChannelEvent,
    ChatPayload,
    DeleteEvent,
    DemoteEvent,
    EventBus,
    EventName,
    InboundMessage,
    MessageRef,
    PromoteEvent,
    RoleChangePayload,
    parse_event,
)
from .reconciler import HISTORY_LIMIT, TimelineEntry, TimelinePhase, TimelineReconciler
from .transport import AblyRestChannel, ChannelTransport, LocalChannel, LocalHub

__all__ = [
    "AddEvent",
    "ChannelEvent",
    "ChatPayload",
    "DeleteEvent",
    "DemoteEvent",
    "EventBus",
    "EventName",
    "InboundMessage",
    "MessageRef",
    "PromoteEvent",
    "RoleChangePayload",
    "parse_event",
    "HISTORY_LIMIT",
    "TimelineEntry",
    "TimelinePhase",
    "TimelineReconciler",
    "AblyRestChannel",
    "ChannelTransport",
    "LocalChannel",
    "LocalHub",
]
