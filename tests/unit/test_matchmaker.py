"""
Unit tests for FIFO matchmaking.
"""

import re
from concurrent.futures import ThreadPoolExecutor

import pytest

import signaling_events as events
from backend import generate_room_id
from exceptions import InvariantViolation
from tests.helpers import events_for


class TestMatchmaker:
    """Test cases for Matchmaker."""

    @pytest.mark.unit
    def test_single_request_waits(self, backend, connected):
        connected("a")

        outbound = backend.matchmaker.request_match("a")

        assert outbound == []
        assert list(backend.state.waiting) == ["a"]
        assert backend.registry.get("a").in_call is False

    @pytest.mark.unit
    def test_two_requests_are_paired(self, backend, connected):
        connected("a", "b")

        backend.matchmaker.request_match("a")
        outbound = backend.matchmaker.request_match("b")

        (event_a, payload_a), = events_for(outbound, "a")
        (event_b, payload_b), = events_for(outbound, "b")
        assert event_a == event_b == events.MATCHED
        assert payload_a["peer"] == "b"
        assert payload_b["peer"] == "a"
        assert payload_a["roomId"] == payload_b["roomId"]

        room = backend.state.rooms[payload_a["roomId"]]
        assert (room.user1, room.user2) == ("a", "b")
        assert backend.registry.get("a").in_call is True
        assert backend.registry.get("b").in_call is True
        assert len(backend.state.waiting) == 0

    @pytest.mark.unit
    def test_pairs_oldest_first(self, backend, connected):
        ids = connected("a", "b", "c", "d", "e")

        # Fill the queue without running a pairing pass, as a burst would
        backend.state.waiting.extend(ids)
        outbound = backend.matchmaker._pair_waiting()

        assert events_for(outbound, "a")[0][1]["peer"] == "b"
        assert events_for(outbound, "c")[0][1]["peer"] == "d"
        assert events_for(outbound, "e") == []
        assert list(backend.state.waiting) == ["e"]
        assert len(backend.state.rooms) == 2

    @pytest.mark.unit
    def test_in_call_request_is_ignored(self, backend, connected):
        connected("a", "b")
        backend.matchmaker.request_match("a")
        backend.matchmaker.request_match("b")

        outbound = backend.matchmaker.request_match("a")

        assert outbound == []
        assert "a" not in backend.state.waiting

    @pytest.mark.unit
    def test_repeated_request_queues_once(self, backend, connected):
        connected("a")

        backend.matchmaker.request_match("a")
        backend.matchmaker.request_match("a")

        assert list(backend.state.waiting) == ["a"]
        assert backend.state.rooms == {}

    @pytest.mark.unit
    def test_unknown_connection_is_ignored(self, backend):
        assert backend.matchmaker.request_match("ghost") == []
        assert len(backend.state.waiting) == 0

    @pytest.mark.unit
    def test_stale_pair_is_discarded(self, backend, connected):
        connected("a", "b", "c")
        backend.state.waiting.extend(["a", "gone", "b"])

        outbound = backend.matchmaker._pair_waiting()

        # "a" went out with the stale entry; "b" is left waiting alone
        assert outbound == []
        assert list(backend.state.waiting) == ["b"]

        outbound = backend.matchmaker.request_match("c")
        assert events_for(outbound, "c")[0][1]["peer"] == "b"

    @pytest.mark.unit
    def test_cancel_wait(self, backend, connected):
        connected("a")
        backend.matchmaker.request_match("a")

        assert backend.matchmaker.cancel_wait("a") is True
        assert backend.matchmaker.cancel_wait("a") is False
        assert backend.matchmaker.waiting_count() == 0

    @pytest.mark.unit
    def test_concurrent_requests_never_double_pair(self, backend):
        ids = [f"user-{i}" for i in range(200)]
        for connection_id in ids:
            backend.connect(connection_id)

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(backend.matchmaker.request_match, ids))

        members = [member for room in backend.state.rooms.values() for member in (room.user1, room.user2)]
        assert len(members) == len(set(members)) == 200
        assert len(backend.state.waiting) == 0
        assert all(backend.registry.get(connection_id).in_call for connection_id in ids)


class TestRoomIds:

    @pytest.mark.unit
    def test_room_id_format(self):
        assert re.fullmatch(r"room_\d+_[a-z0-9]{9}", generate_room_id())

    @pytest.mark.unit
    def test_room_ids_are_unique_across_live_rooms(self, backend, connected):
        ids = connected(*[f"user-{i}" for i in range(40)])
        for connection_id in ids:
            backend.matchmaker.request_match(connection_id)

        assert len(backend.state.rooms) == 20


class TestQueueIntegrity:

    @pytest.mark.unit
    def test_in_call_entry_fails_before_any_pairing(self, backend, connected):
        connected("a", "b", "c", "d")
        backend.registry.set_in_call("c", True)
        backend.state.waiting.extend(["a", "b", "c", "d"])

        with pytest.raises(InvariantViolation):
            backend.matchmaker._pair_waiting()

        # Nothing popped, nothing paired
        assert list(backend.state.waiting) == ["a", "b", "c", "d"]
        assert backend.state.rooms == {}
        assert backend.registry.get("a").in_call is False

    @pytest.mark.unit
    def test_duplicate_entry_fails_before_any_pairing(self, backend, connected):
        connected("a", "b")
        backend.state.waiting.extend(["a", "b", "a"])

        with pytest.raises(InvariantViolation):
            backend.matchmaker._pair_waiting()

        assert list(backend.state.waiting) == ["a", "b", "a"]
        assert backend.state.rooms == {}
