"""Tests for telemetry and metrics tracking."""
import sqlite3
import tempfile
import time
from pathlib import Path

import pytest

from heist_crew import telemetry as telemetry_module
from heist_crew.telemetry import (
    MetricEvent,
    MetricType,
    TelemetryCollector,
    get_telemetry,
    track_duration,
)


def test_metric_event_creation():
    """Test MetricEvent dataclass creation."""
    event = MetricEvent(
        timestamp=time.time(),
        metric_type=MetricType.VOTE,
        name="alpha",
        value=1.0,
        tags={"room_id": "room"},
    )

    assert event.metric_type == MetricType.VOTE
    assert event.tags["room_id"] == "room"
    assert event.metadata == {}


def test_telemetry_collector_init():
    """Test TelemetryCollector initialization."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_telemetry.db"
        collector = TelemetryCollector(db_path)

        assert collector.db_path == db_path
        assert db_path.exists()
        assert len(collector._metrics_buffer) == 0


def test_track_command():
    """Test command tracking."""
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")

        collector.track_command("heist_vote", "player1", "room", success=True, duration_ms=12.5)

        event = collector._metrics_buffer[0]
        assert event.metric_type == MetricType.COMMAND_USAGE
        assert event.name == "heist_vote"
        assert event.tags == {"player_id": "player1", "room_id": "room", "success": "True"}
        assert event.metadata["duration_ms"] == 12.5


def test_phase_summary_groups_by_room(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")

    collector.track_phase_transition("north", "IDLE", "ANNOUNCING", generation=1)
    collector.track_phase_transition("north", "ANNOUNCING", "VOTING", generation=2)
    collector.track_phase_transition("south", "VOTING", "IN_PROGRESS", generation=5, forced=True)
    collector.flush()

    assert collector.get_phase_summary() == {
        "north": {"ANNOUNCING": 1, "VOTING": 1},
        "south": {"IN_PROGRESS": 1},
    }


def test_payout_summary(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")

    collector.track_payout("room", 1, 90, participants=3, success=True)
    collector.track_payout("room", 2, 0, participants=2, success=False, failed=0)
    collector.flush()

    summary = collector.get_payout_summary()
    assert summary["distributions"] == 2
    assert summary["total_paid"] == 90
    assert summary["success_rate"] == pytest.approx(0.5)


def test_payout_summary_when_empty(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")

    assert collector.get_payout_summary() == {
        "distributions": 0,
        "total_paid": 0,
        "success_rate": None,
    }


def test_error_and_system_events(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")

    collector.track_error("NotFoundError", command="phase:IN_PROGRESS", room_id="room")
    collector.track_error("NotFoundError", command="phase:IN_PROGRESS", room_id="room")
    collector.track_system_event("fallback_to_cooldown", source="room", reason="missing crime")
    collector.flush()

    assert collector.get_error_summary() == {"NotFoundError": 2}
    [event] = collector.get_system_events()
    assert event["event"] == "fallback_to_cooldown"
    assert event["source"] == "room"
    assert event["reason"] == "missing crime"


def test_buffer_flushes_at_hundred_events(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")

    for _ in range(100):
        collector.track_vote("room", "dazza", "alpha", recast=False)

    assert collector._metrics_buffer == []
    with sqlite3.connect(tmp_path / "test.db") as conn:
        assert conn.execute("SELECT COUNT(*) FROM metrics").fetchone()[0] == 100


def test_generate_report_flushes_first(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    collector.track_phase_transition("room", "IDLE", "ANNOUNCING", generation=1)

    report = collector.generate_report()

    assert report["phases_24h"] == {"room": {"ANNOUNCING": 1}}
    assert set(report) == {
        "generated_at",
        "uptime_seconds",
        "errors_24h",
        "phases_24h",
        "payouts_24h",
        "performance_24h",
        "system_events_24h",
    }


def test_cleanup_old_data(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    collector.track_system_event("room_recovered", source="room")
    collector.flush()
    with sqlite3.connect(tmp_path / "test.db") as conn:
        conn.execute("UPDATE metrics SET timestamp = ?", (time.time() - 40 * 86400,))
        conn.commit()

    assert collector.cleanup_old_data(days_to_keep=30) == 1
    assert collector.get_system_events() == []


def test_track_duration_records_errors():
    with pytest.raises(ValueError):
        with track_duration("resolve", tags={"room_id": "room"}):
            raise ValueError("bad roll")

    buffer = get_telemetry()._metrics_buffer
    assert [event.metric_type for event in buffer] == [MetricType.PERFORMANCE, MetricType.ERROR_RATE]
    assert buffer[0].tags == {"room_id": "room"}
    assert buffer[1].tags == {"command": "resolve", "room_id": "room"}


def test_performance_summary(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")

    collector.track_performance("phase:VOTING", 10.0, {"room_id": "room"})
    collector.track_performance("phase:VOTING", 30.0, {"room_id": "room"})
    collector.flush()

    assert collector.get_performance_summary() == {
        "phase:VOTING": {"count": 2, "avg_ms": 20.0, "max_ms": 30.0}
    }


def test_singleton_follows_env(tmp_path, monkeypatch):
    monkeypatch.setenv("HEIST_TELEMETRY_DB", str(tmp_path / "other.db"))
    telemetry_module.reset_telemetry()

    assert get_telemetry() is get_telemetry()
    assert get_telemetry().db_path == tmp_path / "other.db"
