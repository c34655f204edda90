"""Tests for heist persistence and room-scoped configuration."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from heist_crew.errors import NotFoundError, PersistenceError
from heist_crew.models import Event, SessionStatus
from heist_crew.state import HeistState, RoomConfigStore


def test_config_keys_are_room_scoped(tmp_path):
    """Two rooms writing the same key never see each other's value."""
    state = HeistState(tmp_path / "heist.db")
    north = RoomConfigStore(state, "north")
    south = RoomConfigStore(state, "south")

    north.set("current_session_id", 1)
    south.set("current_session_id", 2)
    north.delete("current_session_id")

    assert north.get("current_session_id") is None
    assert south.get("current_session_id") == "2"
    assert state.known_rooms() == ["south"]


def test_compare_and_set(tmp_path):
    state = HeistState(tmp_path / "heist.db")
    store = RoomConfigStore(state, "room")

    assert store.compare_and_set("distributed_flag", None, 5) is True
    assert store.compare_and_set("distributed_flag", None, 6) is False
    assert store.compare_and_set("distributed_flag", "4", 6) is False
    assert store.get("distributed_flag") == "5"
    assert store.compare_and_set("distributed_flag", "5", None) is True
    assert store.get("distributed_flag") is None


def test_typed_config_helpers_ignore_garbage(tmp_path):
    state = HeistState(tmp_path / "heist.db")
    store = RoomConfigStore(state, "room")
    store.set("generation", "seven")
    store.set("phase_deadline", "not-a-date")
    store.set("offered_crimes", "{broken")

    assert store.get_int("generation") is None
    assert store.get_datetime("phase_deadline") is None
    assert store.get_list("offered_crimes") == []

    store.set_list("offered_crimes", ["alpha", "bravo"])
    assert store.get_list("offered_crimes") == ["alpha", "bravo"]
    assert store.snapshot()["generation"] == "seven"


def test_sessions_round_trip(tmp_path):
    state = HeistState(tmp_path / "heist.db")
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    session = state.create_session("room", now)

    assert state.active_session("room").id == session.id

    session.status = SessionStatus.COMPLETED
    session.crime_type = "alpha"
    session.success = True
    session.total_payout = 90
    session.completed_at = now + timedelta(minutes=30)
    state.update_session(session)

    loaded = state.require_session(session.id)
    assert loaded.status is SessionStatus.COMPLETED
    assert loaded.success is True
    assert loaded.total_payout == 90
    assert loaded.completed_at == now + timedelta(minutes=30)
    assert state.active_session("room") is None
    assert [s.id for s in state.list_sessions("room")] == [session.id]


def test_require_session_missing(tmp_path):
    state = HeistState(tmp_path / "heist.db")
    with pytest.raises(NotFoundError):
        state.require_session(404)


def test_revote_keeps_join_time(tmp_path):
    """Re-voting overwrites the ballot and its time but not the join time."""
    state = HeistState(tmp_path / "heist.db")
    session = state.create_session("room")
    first = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    later = first + timedelta(seconds=20)

    assert state.upsert_vote(session.id, "dazza", "alpha", first) is True
    assert state.upsert_vote(session.id, "dazza", "bravo", later) is False

    [participant] = state.participants(session.id)
    assert participant.vote == "bravo"
    assert participant.joined_at == first
    assert participant.voted_at == later


def test_events_are_filtered_by_room(tmp_path):
    state = HeistState(tmp_path / "heist.db")
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    state.append_event(Event(now, "north", "heist_vote", {"username": "a"}))
    state.append_event(Event(now, "south", "heist_vote", {"username": "b"}))

    events = state.export_events("south")
    assert [e.payload["username"] for e in events] == ["b"]
    assert len(state.export_events()) == 2


def test_unusable_store_raises_persistence_error(tmp_path):
    blocker = tmp_path / "heist.db"
    blocker.mkdir()

    with pytest.raises(PersistenceError):
        HeistState(blocker)
