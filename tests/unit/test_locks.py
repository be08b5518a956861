"""Tests for the slot lock table."""

import pytest

from formationlab.collab.locks import LockStatus, LockTable
from formationlab.errors import LockUnavailable


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def table(clock) -> LockTable:
    return LockTable(ttl=30.0, max_queue=2, clock=clock)


class TestAcquire:
    """Granted, queued and rejected requests."""

    def test_free_slot_granted(self, table, clock):
        decision = table.acquire("alice", "st")

        assert decision.granted
        assert decision.holder == "alice"
        assert decision.expires_at == clock.now + 30.0
        assert table.holder("st") == "alice"

    def test_owner_reacquire_refreshes_ttl(self, table, clock):
        """Re-acquiring your own lock extends it."""
        table.acquire("alice", "st")
        clock.advance(20.0)
        decision = table.acquire("alice", "st")

        assert decision.granted
        assert decision.expires_at == clock.now + 30.0

    def test_held_slot_queues_fifo(self, table):
        """Other participants wait in arrival order."""
        table.acquire("alice", "st")
        bob = table.acquire("bob", "st")
        carol = table.acquire("carol", "st")

        assert bob.status == LockStatus.QUEUED and bob.position == 1
        assert carol.status == LockStatus.QUEUED and carol.position == 2
        assert bob.holder == "alice"
        # Asking again keeps the same place
        assert table.acquire("bob", "st").position == 1

    def test_full_queue_rejects(self, table):
        table.acquire("alice", "st")
        table.acquire("bob", "st")
        table.acquire("carol", "st")
        decision = table.acquire("dave", "st")

        assert decision.status == LockStatus.REJECTED
        assert decision.reason == "queue full"

    def test_expired_lock_counts_as_released(self, table, clock):
        """After the TTL another participant gets the slot."""
        table.acquire("alice", "st")
        clock.advance(30.0)

        assert table.holder("st") is None
        assert table.acquire("bob", "st").granted
        assert table.holder("st") == "bob"

    def test_expired_lock_serves_queue_first(self, table, clock):
        """Waiting participants keep their turn when the holder times out."""
        table.acquire("alice", "st")
        table.acquire("bob", "st")
        clock.advance(31.0)

        decision = table.acquire("carol", "st")

        assert decision.status == LockStatus.QUEUED
        assert decision.holder == "bob"


class TestRelease:
    """Release, promotion and expiry purging."""

    def test_release_promotes_queue_head(self, table):
        table.acquire("alice", "st")
        table.acquire("bob", "st")
        table.acquire("carol", "st")

        promoted = table.release("alice", "st")

        assert promoted.granted
        assert promoted.participant_id == "bob"
        assert table.holder("st") == "bob"
        assert table.snapshot()["st"]["queue"] == ["carol"]

    def test_release_without_queue_frees_slot(self, table):
        table.acquire("alice", "st")

        assert table.release("alice", "st") is None
        assert table.holder("st") is None
        assert len(table) == 0

    def test_non_owner_release_leaves_queue(self, table):
        """A waiting participant releasing just gives up its place."""
        table.acquire("alice", "st")
        table.acquire("bob", "st")

        assert table.release("bob", "st") is None
        assert table.holder("st") == "alice"
        assert table.snapshot()["st"]["queue"] == []

    def test_release_all(self, table):
        """Every lock and queue place of a participant goes."""
        table.acquire("alice", "st")
        table.acquire("alice", "gk")
        table.acquire("bob", "gk")
        table.acquire("carol", "lb")
        table.acquire("alice", "lb")

        promotions = table.release_all("alice")

        assert [p.participant_id for p in promotions] == ["bob"]
        assert table.held_by("alice") == []
        assert table.holder("st") is None
        assert table.snapshot()["lb"]["queue"] == []

    def test_purge_expired_promotes(self, table, clock):
        table.acquire("alice", "st")
        table.acquire("bob", "st")
        table.acquire("carol", "gk")
        clock.advance(30.0)

        promotions = table.purge_expired()

        assert [(p.slot_id, p.participant_id) for p in promotions] == [("st", "bob")]
        assert table.holder("gk") is None
        assert table.holder("st") == "bob"

    def test_require(self, table, clock):
        """require() raises while someone else actively holds the slot."""
        table.acquire("alice", "st")
        table.require("alice", "st")

        with pytest.raises(LockUnavailable) as exc_info:
            table.require("bob", "st")
        assert exc_info.value.holder == "alice"

        clock.advance(30.0)
        table.require("bob", "st")

    def test_invalid_ttl(self):
        with pytest.raises(ValueError):
            LockTable(ttl=0)
