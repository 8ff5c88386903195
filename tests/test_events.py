"""
Unit tests for channel event parsing and the event bus.
"""

import asyncio
import json

import pytest

from rolechat.timeline.events import (
    AddEvent,
    DeleteEvent,
    DemoteEvent,
    EventBus,
    PromoteEvent,
    parse_event,
)


def raw(name, data=None, extras=None, msg_id="m1", client_id="alice@example.com", **fields):
    message = {"id": msg_id, "clientId": client_id, "name": name, "data": data, "extras": extras or {}}
    message.update(fields)
    return message


class TestParseEvent:
    """Test raw message parsing."""

    def test_add(self):
        """ADD messages carry text and avatar."""
        event = parse_event(raw("ADD", {"text": "hi", "avatarUrl": "https://img/a"}, timeserial="001"))

        assert isinstance(event, AddEvent)
        assert event.payload.text == "hi"
        assert event.payload.avatar_url == "https://img/a"
        assert event.message.client_id == "alice@example.com"
        assert event.message.timeserial == "001"

    def test_json_encoded_data(self):
        """JSON-encoded data strings are decoded."""
        event = parse_event(raw("ADD", json.dumps({"text": "hi"}), encoding="json"))

        assert event.payload.text == "hi"

    def test_timeserial_from_extras(self):
        """The ordering key may travel in extras."""
        event = parse_event(raw("ADD", {"text": "hi"}, extras={"timeserial": "042"}))

        assert event.message.timeserial == "042"

    def test_delete(self):
        """DELETE messages carry a reference."""
        event = parse_event(raw("DELETE", extras={"ref": {"id": "m0", "timeserial": "000"}}))

        assert isinstance(event, DeleteEvent)
        assert event.ref.id == "m0"
        assert event.ref.timeserial == "000"

    def test_delete_without_ref(self):
        """DELETE without a reference is malformed."""
        assert parse_event(raw("DELETE")) is None

    def test_promote_and_demote(self):
        """Role change notices are typed by name."""
        payload = {"id": "bob@example.com", "text": "promoted", "avatarUrl": None, "role": "moderator"}

        assert isinstance(parse_event(raw("PROMOTE", payload)), PromoteEvent)
        assert isinstance(parse_event(raw("DEMOTE", {**payload, "role": "participant"})), DemoteEvent)

    def test_promote_missing_role(self):
        """Role change payloads need a role."""
        assert parse_event(raw("PROMOTE", {"id": "bob@example.com", "text": "x"})) is None

    def test_unknown_name(self):
        """Unknown names are ignored."""
        assert parse_event(raw("TYPING")) is None

    def test_missing_id(self):
        """Messages without an id are malformed."""
        assert parse_event({"name": "ADD", "data": {"text": "hi"}}) is None


class TestEventBus:
    """Test typed dispatch."""

    def test_dispatch_by_type(self):
        """Handlers only see their event type."""
        bus = EventBus()
        adds, deletes = [], []
        bus.subscribe(AddEvent, adds.append)
        bus.subscribe(DeleteEvent, deletes.append)

        bus.dispatch(parse_event(raw("ADD", {"text": "hi"})))

        assert len(adds) == 1
        assert deletes == []

    def test_unsubscribe(self):
        """Unsubscribed handlers receive nothing."""
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(AddEvent, seen.append)
        unsubscribe()

        bus.dispatch(parse_event(raw("ADD", {"text": "hi"})))

        assert seen == []

    def test_failing_handler_isolated(self):
        """One failing subscriber does not starve the others."""
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(AddEvent, broken)
        bus.subscribe(AddEvent, seen.append)

        bus.dispatch(parse_event(raw("ADD", {"text": "hi"})))

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_coroutine_handlers(self):
        """Coroutine handlers are scheduled and can be drained."""
        bus = EventBus()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event)

        bus.subscribe(PromoteEvent, handler)
        bus.dispatch(parse_event(raw("PROMOTE", {"id": "bob", "text": "x", "role": "moderator"})))
        await bus.drain()

        assert len(seen) == 1
