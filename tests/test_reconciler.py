"""
Tests for timeline reconciliation of live and historical messages.
"""

import asyncio

import pytest

from rolechat.timeline.events import EventBus, parse_event
from rolechat.timeline.reconciler import TimelinePhase, TimelineReconciler
from rolechat.timeline.transport import LocalHub

ALICE = "alice@example.com"
BOB = "bob@example.com"


def add(msg_id, text, sender=ALICE, timeserial=None):
    return {
        "id": msg_id,
        "clientId": sender,
        "name": "ADD",
        "data": {"text": text, "avatarUrl": None},
        "timeserial": timeserial or msg_id,
    }


def delete(msg_id, ref_id=None, ref_serial=None, sender=ALICE):
    return {
        "id": msg_id,
        "clientId": sender,
        "name": "DELETE",
        "extras": {"ref": {"id": ref_id, "timeserial": ref_serial}},
        "timeserial": msg_id,
    }


def role_change(name, msg_id, target=BOB):
    return {
        "id": msg_id,
        "clientId": ALICE,
        "name": name,
        "data": {"id": target, "text": f"{name} {target}", "role": "moderator"},
        "timeserial": msg_id,
    }


@pytest.fixture
def live():
    """Reconciler attached to a bus; returns (reconciler, deliver)."""
    bus = EventBus()
    reconciler = TimelineReconciler("chat:general")
    reconciler.attach(bus)

    def deliver(message):
        bus.dispatch(parse_event(message))

    return reconciler, deliver


def texts(reconciler):
    return [entry.text for entry in reconciler.messages]


class TestLiveEvents:
    """Test the live path."""

    def test_add(self, live):
        """Live messages are appended in arrival order."""
        reconciler, deliver = live
        deliver(add("m1", "one"))
        deliver(add("m2", "two"))

        assert texts(reconciler) == ["one", "two"]

    def test_self_delete(self, live):
        """A sender may delete their own message."""
        reconciler, deliver = live
        deliver(add("m1", "oops"))
        deliver(delete("d1", ref_id="m1"))

        assert reconciler.messages == []

    def test_foreign_delete_ignored(self, live):
        """Deletes from another sender have no effect."""
        reconciler, deliver = live
        deliver(add("m1", "mine"))
        deliver(delete("d1", ref_id="m1", sender=BOB))

        assert texts(reconciler) == ["mine"]

    def test_delete_without_sender_ignored(self):
        """Deletes without a sender identity have no effect."""
        reconciler = TimelineReconciler("chat:general")
        reconciler.handle_add(parse_event(add("m1", "keep")))
        message = delete("d1", ref_id="m1")
        message["clientId"] = None

        reconciler.handle_delete(parse_event(message))

        assert texts(reconciler) == ["keep"]

    def test_duplicate_delivery(self, live):
        """A message delivered twice shows once."""
        reconciler, deliver = live
        deliver(add("m1", "once"))
        deliver(add("m1", "once"))

        assert len(reconciler) == 1

    def test_promote_shown_demote_not(self, live):
        """Promotion notices enter the transcript, demotion notices do not."""
        reconciler, deliver = live
        deliver(role_change("PROMOTE", "p1"))
        deliver(role_change("DEMOTE", "p2"))

        assert len(reconciler) == 1
        assert reconciler.messages[0].is_system

    def test_delete_before_target(self, live):
        """A delete that arrives before its target still hides it."""
        reconciler, deliver = live
        deliver(delete("d1", ref_id="m1"))
        deliver(add("m1", "late"))

        assert reconciler.messages == []

    def test_change_listener(self, live):
        """Listeners receive the timeline after each change."""
        reconciler, deliver = live
        snapshots = []
        reconciler.on_change(snapshots.append)

        deliver(add("m1", "one"))
        deliver(delete("d1", ref_id="m1"))

        assert [len(s) for s in snapshots] == [1, 0]


class TestHistory:
    """Test the backfill path."""

    def test_history_then_live(self, live):
        """Live messages that arrived first stay after the history."""
        reconciler, deliver = live
        deliver(add("m3", "three"))

        reconciler.apply_history([add("m1", "one"), add("m2", "two")])

        assert texts(reconciler) == ["one", "two", "three"]
        assert reconciler.phase is TimelinePhase.LIVE

    def test_overlap_deduplicated(self, live):
        """Messages both in history and live show once, where they first arrived."""
        reconciler, deliver = live
        deliver(add("m2", "two"))

        reconciler.apply_history([add("m1", "one"), add("m2", "two"), add("m3", "three")])

        assert texts(reconciler) == ["one", "three", "two"]
        assert len(reconciler) == 3

    def test_historical_delete_by_timeserial(self):
        """History deletes match the target by timeserial."""
        reconciler = TimelineReconciler("chat:general")

        reconciler.apply_history([
            add("m1", "gone", timeserial="ts-1"),
            add("m2", "kept", timeserial="ts-2"),
            delete("d1", ref_id="stale-id", ref_serial="ts-1"),
        ])

        assert texts(reconciler) == ["kept"]

    def test_historical_foreign_delete(self):
        """History deletes from another sender have no effect."""
        reconciler = TimelineReconciler("chat:general")

        reconciler.apply_history([
            add("m1", "mine", timeserial="ts-1"),
            delete("d1", ref_serial="ts-1", sender=BOB),
        ])

        assert texts(reconciler) == ["mine"]

    def test_live_delete_hides_history(self, live):
        """A live delete that raced the backfill hides the historical target."""
        reconciler, deliver = live
        deliver(delete("d1", ref_id="m1", ref_serial="ts-1"))

        reconciler.apply_history([add("m1", "raced", timeserial="ts-1")])

        assert reconciler.messages == []

    def test_history_promote_and_demote(self):
        """History keeps promotion notices and skips demotion notices."""
        reconciler = TimelineReconciler("chat:general")

        reconciler.apply_history([
            add("m1", "hello"),
            role_change("PROMOTE", "p1"),
            role_change("DEMOTE", "p2"),
        ])

        assert [e.name.value for e in reconciler.messages] == ["ADD", "PROMOTE"]

    def test_malformed_history_skipped(self):
        """Malformed history items are skipped."""
        reconciler = TimelineReconciler("chat:general")

        reconciler.apply_history([{"name": "ADD"}, add("m1", "ok")])

        assert texts(reconciler) == ["ok"]

    @pytest.mark.asyncio
    async def test_backfill_from_transport(self):
        """Backfill reads the newest page and shows it oldest first."""
        hub = LocalHub()
        channel = hub.channel("chat:general", ALICE)
        for text in ("one", "two", "three"):
            await channel.publish("ADD", {"text": text})

        bus = EventBus()
        reconciler = TimelineReconciler("chat:general", history_limit=2)
        reconciler.attach(bus)
        channel.subscribe(lambda message: bus.dispatch(parse_event(message)))
        await channel.publish("ADD", {"text": "four"})

        assert await reconciler.backfill(channel)
        assert texts(reconciler) == ["three", "four"]


class SlowHistory:
    """Transport whose history call blocks until released."""

    name = "chat:general"

    def __init__(self, items):
        self.items = items
        self.release = asyncio.Event()

    async def history(self, limit=100, direction="backwards"):
        await self.release.wait()
        return list(reversed(self.items))


class TestClose:
    """Test teardown."""

    @pytest.mark.asyncio
    async def test_late_history_discarded(self):
        """History that resolves after close is ignored."""
        reconciler = TimelineReconciler("chat:general")
        transport = SlowHistory([add("m1", "late")])

        task = asyncio.ensure_future(reconciler.backfill(transport))
        await asyncio.sleep(0)
        reconciler.close()
        transport.release.set()

        assert await task is False
        assert reconciler.messages == []
        assert reconciler.phase is TimelinePhase.CLOSED

    def test_live_events_after_close(self, live):
        """Events after close change nothing."""
        reconciler, deliver = live
        deliver(add("m1", "before"))
        reconciler.close()

        deliver(add("m2", "after"))
        reconciler.handle_add(parse_event(add("m3", "direct")))

        assert texts(reconciler) == ["before"]
