"""
Timeline reconciliation.

Merges the live event stream of one channel with a backfilled history
page into a single ordered, duplicate-free, delete-aware message list.

Phases:
    INITIAL      subscribed to live events, history fetch in flight
    BACKFILLING  the history page is being merged in
    LIVE         steady state, live events append directly
    CLOSED       torn down, every further effect is discarded

The visible timeline is the history segment followed by the live
segment. History always covers older material than the live
subscription, so live events that arrive before the backfill completes
stay behind the history entries.
History replay keeps PROMOTE notices in the transcript along with chat
messages and applies deletes; DEMOTE notices never enter it.

Deletes are self-deletes only: a DELETE removes a message when its
reference matches and its sender is the original sender. Live deletes
match on message id, history deletes on the transport's timeserial.
Every delete also leaves a tombstone, so a target that shows up after
its delete (for example a live delete racing the backfill) is never
shown.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger

from .events import (
    AddEvent,
    DeleteEvent,
    EventBus,
    EventName,
    MessageRef,
    PromoteEvent,
    parse_event,
)

if TYPE_CHECKING:
    from .transport import ChannelTransport

HISTORY_LIMIT = 100

MATCH_BY_ID = "id"
MATCH_BY_TIMESERIAL = "timeserial"


class TimelinePhase(str, Enum):
    INITIAL = "initial"
    BACKFILLING = "backfilling"
    LIVE = "live"
    CLOSED = "closed"


@dataclass(frozen=True)
class TimelineEntry:
    """
    One visible message.

    Attributes:
        id: Message id
        client_id: Sender identity
        name: ADD for chat messages, PROMOTE for role-change notices
        text: Message text
        avatar_url: Sender avatar URL
        timeserial: Transport ordering key
        timestamp: Transport timestamp in milliseconds
    """
    id: str
    client_id: Optional[str]
    name: EventName
    text: str
    avatar_url: Optional[str] = None
    timeserial: Optional[str] = None
    timestamp: Optional[int] = None

    @property
    def is_system(self) -> bool:
        return self.name is EventName.PROMOTE

    @classmethod
    def from_event(cls, event) -> "TimelineEntry":
        message = event.message
        return cls(
            id=message.id,
            client_id=message.client_id,
            name=EventName(message.name),
            text=event.payload.text,
            avatar_url=event.payload.avatar_url,
            timeserial=message.timeserial,
            timestamp=message.timestamp,
        )


class TimelineReconciler:
    """Owns the materialized timeline of one channel in one client session."""

    def __init__(self, channel_name: str, history_limit: int = HISTORY_LIMIT):
        """
        Initialize reconciler.

        Args:
            channel_name: Realtime channel name (e.g. "chat:general")
            history_limit: Number of most recent history entries to backfill
        """
        self.channel_name = channel_name
        self.history_limit = history_limit
        self.phase = TimelinePhase.INITIAL

        self._history: List[TimelineEntry] = []
        self._live: List[TimelineEntry] = []
        self._seen: Set[str] = set()
        self._tombstones: Dict[str, Set[Tuple[str, str]]] = {
            MATCH_BY_ID: set(),
            MATCH_BY_TIMESERIAL: set(),
        }
        self._listeners: List[Callable[[List[TimelineEntry]], None]] = []
        self._unsubscribers: List[Callable[[], None]] = []

    @property
    def messages(self) -> List[TimelineEntry]:
        """Visible timeline, oldest first."""
        return self._history + self._live

    @property
    def closed(self) -> bool:
        return self.phase is TimelinePhase.CLOSED

    def __len__(self) -> int:
        return len(self._history) + len(self._live)

    def on_change(self, listener: Callable[[List[TimelineEntry]], None]) -> None:
        """Register a callback invoked with the timeline after every change."""
        self._listeners.append(listener)

    def _notify(self) -> None:
        snapshot = self.messages
        for listener in list(self._listeners):
            listener(snapshot)

    # ========================================================================
    # Live path
    # ========================================================================

    def attach(self, bus: EventBus) -> None:
        """Subscribe the timeline updater to a channel's event bus."""
        self._unsubscribers.extend([
            bus.subscribe(AddEvent, self.handle_add),
            bus.subscribe(DeleteEvent, self.handle_delete),
            bus.subscribe(PromoteEvent, self.handle_promote),
        ])

    def handle_add(self, event: AddEvent) -> None:
        if self.closed:
            return
        if self._append(TimelineEntry.from_event(event), self._live):
            self._notify()

    def handle_promote(self, event: PromoteEvent) -> None:
        if self.closed:
            return
        if self._append(TimelineEntry.from_event(event), self._live):
            self._notify()

    def handle_delete(self, event: DeleteEvent) -> None:
        if self.closed:
            return
        if self._delete(event.ref, event.message.client_id, MATCH_BY_ID):
            self._notify()

    # ========================================================================
    # History path
    # ========================================================================

    async def backfill(self, transport: "ChannelTransport") -> bool:
        """
        Fetch the most recent history page and merge it in.

        Args:
            transport: Channel transport to read history from

        Returns:
            True if the history was merged, False if the reconciler was
            closed while the fetch was in flight
        """
        items = await transport.history(limit=self.history_limit, direction="backwards")
        if self.closed:
            logger.debug(f"[{self.channel_name}] Discarding history that resolved after close")
            return False
        self.apply_history(reversed(items))
        return True

    def apply_history(self, items: Iterable[Any]) -> None:
        """
        Merge oldest-first history items and switch to the live phase.

        Args:
            items: Raw history messages, oldest first
        """
        if self.closed:
            return

        self.phase = TimelinePhase.BACKFILLING
        merged = 0
        for item in items:
            event = parse_event(item)
            if isinstance(event, (AddEvent, PromoteEvent)):
                merged += self._append(TimelineEntry.from_event(event), self._history)
            elif isinstance(event, DeleteEvent):
                self._delete(event.ref, event.message.client_id, MATCH_BY_TIMESERIAL)

        self.phase = TimelinePhase.LIVE
        logger.debug(
            f"[{self.channel_name}] Backfilled {merged} messages, "
            f"{len(self._live)} live messages kept after them"
        )
        self._notify()

    def go_live(self) -> None:
        """Enter the live phase without history (e.g. the fetch failed)."""
        if not self.closed:
            self.phase = TimelinePhase.LIVE

    # ========================================================================
    # Merge primitives
    # ========================================================================

    def _tombstoned(self, entry: TimelineEntry) -> bool:
        if entry.client_id is None:
            return False
        if (entry.id, entry.client_id) in self._tombstones[MATCH_BY_ID]:
            return True
        return (
            entry.timeserial is not None
            and (entry.timeserial, entry.client_id) in self._tombstones[MATCH_BY_TIMESERIAL]
        )

    def _append(self, entry: TimelineEntry, segment: List[TimelineEntry]) -> bool:
        if entry.id in self._seen or self._tombstoned(entry):
            return False
        self._seen.add(entry.id)
        segment.append(entry)
        return True

    def _delete(self, ref: MessageRef, sender: Optional[str], match_by: str) -> bool:
        """
        Remove the sender's own message referenced by ref.

        Returns:
            True if a visible message was removed
        """
        if sender is None:
            return False

        if ref.id:
            self._tombstones[MATCH_BY_ID].add((ref.id, sender))
        if ref.timeserial:
            self._tombstones[MATCH_BY_TIMESERIAL].add((ref.timeserial, sender))

        if match_by == MATCH_BY_TIMESERIAL and ref.timeserial:
            key, value = MATCH_BY_TIMESERIAL, ref.timeserial
        elif ref.id:
            key, value = MATCH_BY_ID, ref.id
        else:
            key, value = MATCH_BY_TIMESERIAL, ref.timeserial

        def matches(entry: TimelineEntry) -> bool:
            return getattr(entry, key) == value and entry.client_id == sender

        removed = False
        for segment in (self._history, self._live):
            kept = [entry for entry in segment if not matches(entry)]
            if len(kept) != len(segment):
                segment[:] = kept
                removed = True
        return removed

    def close(self) -> None:
        """Tear down: suppress every further state change."""
        self.phase = TimelinePhase.CLOSED
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._listeners.clear()
