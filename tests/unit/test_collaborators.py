"""Tests for the in-memory external collaborators."""

import pytest

from formationlab.collab.collaborators import (
    InMemoryMessaging,
    InMemoryPersistence,
    InMemoryRoster,
    RecordingNotifier,
    RosterProvider,
)
from formationlab.collab.protocol import Join, Leave
from formationlab.errors import ValidationError


class TestInMemoryRoster:
    """Read-only entity lookup."""

    def test_lookup(self, squad):
        roster = InMemoryRoster(squad)

        assert roster.get("a2").role == "striker"
        assert [e.id for e in roster.all()] == sorted(e.id for e in squad)

    def test_unknown_entity(self, squad):
        with pytest.raises(ValidationError):
            InMemoryRoster(squad).get("ghost")

    def test_add(self, entity_factory):
        roster = InMemoryRoster()
        roster.add(entity_factory("n1", "sweeper"))

        assert roster.get("n1").role == "sweeper"

    def test_base_contract(self):
        with pytest.raises(NotImplementedError):
            RosterProvider().get("x")


class TestInMemoryPersistence:
    def test_save_and_load(self):
        store = InMemoryPersistence()
        record = {"id": "f1", "revision": 3, "slots": []}

        store.save("f1", record)
        record["revision"] = 99

        assert store.load("f1")["revision"] == 3
        assert store.saves == [("f1", 3)]

    def test_load_missing(self):
        with pytest.raises(ValidationError):
            InMemoryPersistence().load("f9")


class TestInMemoryMessaging:
    def test_broadcast_and_inbox(self):
        messaging = InMemoryMessaging()
        messaging.broadcast("f1", Join("alice"), exclude="alice")
        messaging.send("bob", Leave("alice"))

        assert messaging.broadcasts == [("f1", Join("alice"), "alice")]
        assert messaging.inbox("bob") == [Leave("alice")]
        assert messaging.inbox("carol") == []


class TestRecordingNotifier:
    def test_of_kind(self):
        notifier = RecordingNotifier()
        notifier.notify("conflict", "stale delta", {"revision": 4})
        notifier.notify("rejection", "out of bounds")

        assert notifier.of_kind("conflict") == [("conflict", "stale delta", {"revision": 4})]
        assert notifier.of_kind("rejection")[0][2] == {}
