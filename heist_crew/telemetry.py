"""Telemetry for heist phases, votes, payouts and failures."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics tracked."""
    COMMAND_USAGE = "command_usage"
    PHASE_TRANSITION = "phase_transition"
    VOTE = "vote"
    PAYOUT = "payout"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    SYSTEM_EVENT = "system_event"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryCollector:
    """Collects and stores telemetry data for heist rooms."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize telemetry collector with database storage."""
        self.db_path = db_path or Path("telemetry.db")
        self._init_database()
        self._start_time = time.time()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = 60  # seconds
        self._last_flush = time.time()

    def _init_database(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name)
            """)
            conn.commit()

    def track_command(
        self,
        command_name: str,
        player_id: str,
        room_id: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
    ):
        """Track chat command usage."""
        self.record(
            MetricType.COMMAND_USAGE,
            command_name,
            1.0,
            tags={"player_id": player_id, "room_id": room_id, "success": str(success)},
            metadata={"duration_ms": duration_ms} if duration_ms is not None else {},
        )

    def track_phase_transition(
        self,
        room_id: str,
        source: str,
        target: str,
        *,
        generation: int,
        forced: bool = False,
    ) -> None:
        self.record(
            MetricType.PHASE_TRANSITION,
            target,
            1.0,
            tags={"room_id": room_id, "from": source, "forced": str(forced)},
            metadata={"generation": generation},
        )

    def track_vote(self, room_id: str, player_id: str, crime_id: str, *, recast: bool) -> None:
        self.record(
            MetricType.VOTE,
            crime_id,
            1.0,
            tags={"room_id": room_id, "player_id": player_id, "recast": str(recast)},
        )

    def track_payout(
        self,
        room_id: str,
        session_id: int,
        total: int,
        *,
        participants: int,
        success: bool,
        failed: int = 0,
    ) -> None:
        self.record(
            MetricType.PAYOUT,
            "distribution",
            float(total),
            tags={"room_id": room_id, "success": str(success)},
            metadata={"session_id": session_id, "participants": participants, "failed": failed},
        )

    def track_error(
        self,
        error_type: str,
        command: Optional[str] = None,
        room_id: Optional[str] = None,
        error_details: Optional[str] = None
    ):
        """Track errors and failures."""
        tags = {}
        if command:
            tags["command"] = command
        if room_id:
            tags["room_id"] = room_id

        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {}
        )

    def track_performance(
        self,
        operation: str,
        duration_ms: float,
        tags: Optional[Dict[str, str]] = None
    ):
        self.record(
            MetricType.PERFORMANCE,
            operation,
            duration_ms,
            tags=tags or {},
            metadata={"unit": "milliseconds"}
        )

    def track_system_event(
        self,
        event: str,
        *,
        source: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Record recovery, fallback and stale-timer events."""

        tags = {}
        if source:
            tags["source"] = source

        metadata = {}
        if reason:
            metadata["reason"] = reason

        self.record(
            MetricType.SYSTEM_EVENT,
            event,
            1.0,
            tags=tags,
            metadata=metadata,
        )

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {}
        )

        self._metrics_buffer.append(event)

        if len(self._metrics_buffer) >= 100 or \
           time.time() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                for event in self._metrics_buffer:
                    conn.execute("""
                        INSERT INTO metrics
                        (timestamp, metric_type, name, value, tags, metadata)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        event.timestamp,
                        event.metric_type.value,
                        event.name,
                        event.value,
                        json.dumps(event.tags),
                        json.dumps(event.metadata)
                    ))
                conn.commit()

            logger.info("Flushed %d metrics to database", len(self._metrics_buffer))
            self._metrics_buffer.clear()
            self._last_flush = time.time()

        except sqlite3.Error as exc:
            logger.error("Failed to flush metrics: %s", exc)

    def get_error_summary(self, hours: int = 24) -> Dict[str, int]:
        """Get error counts for the last N hours."""
        start_time = time.time() - (hours * 3600)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                SELECT name, COUNT(*) as error_count
                FROM metrics
                WHERE metric_type = ? AND timestamp >= ?
                GROUP BY name
                ORDER BY error_count DESC
                """,
                [MetricType.ERROR_RATE.value, start_time],
            )
            return {row[0]: row[1] for row in cursor.fetchall()}

    def get_phase_summary(self, hours: int = 24) -> Dict[str, Dict[str, int]]:
        """Count phase entries per room."""
        start_time = time.time() - (hours * 3600)

        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT json_extract(tags, '$.room_id') as room_id, name, COUNT(*)
                FROM metrics
                WHERE metric_type = ? AND timestamp >= ?
                GROUP BY room_id, name
                """,
                [MetricType.PHASE_TRANSITION.value, start_time],
            ).fetchall()
        summary: Dict[str, Dict[str, int]] = {}
        for room_id, phase, count in rows:
            summary.setdefault(room_id or "unknown", {})[phase] = count
        return summary

    def get_payout_summary(self, hours: int = 24) -> Dict[str, Any]:
        start_time = time.time() - (hours * 3600)

        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(value), 0),
                       SUM(CASE WHEN json_extract(tags, '$.success') = 'True' THEN 1 ELSE 0 END)
                FROM metrics
                WHERE metric_type = ? AND timestamp >= ?
                """,
                [MetricType.PAYOUT.value, start_time],
            ).fetchone()
        distributions = row[0] or 0
        return {
            "distributions": distributions,
            "total_paid": int(row[1] or 0),
            "success_rate": (row[2] or 0) / distributions if distributions else None,
        }

    def get_performance_summary(self, hours: int = 24) -> Dict[str, Dict[str, float]]:
        """Average and worst duration per timed operation."""
        start_time = time.time() - (hours * 3600)

        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT name, COUNT(*), AVG(value), MAX(value)
                FROM metrics
                WHERE metric_type = ? AND timestamp >= ?
                GROUP BY name
                """,
                [MetricType.PERFORMANCE.value, start_time],
            ).fetchall()
        return {
            name: {"count": count, "avg_ms": round(avg, 2), "max_ms": round(worst, 2)}
            for name, count, avg, worst in rows
        }

    def get_system_events(self, hours: int = 24, limit: int = 10) -> List[Dict[str, Any]]:
        start_time = time.time() - (hours * 3600)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                SELECT
                    name,
                    timestamp,
                    json_extract(tags, '$.source') as source,
                    json_extract(metadata, '$.reason') as reason
                FROM metrics
                WHERE metric_type = ? AND timestamp >= ?
                ORDER BY timestamp DESC
                LIMIT ?
                """,
                [MetricType.SYSTEM_EVENT.value, start_time, limit],
            )
            return [
                {
                    "event": row[0],
                    "timestamp": datetime.fromtimestamp(row[1]).isoformat(),
                    "source": row[2],
                    "reason": row[3],
                }
                for row in cursor.fetchall()
            ]

    def generate_report(self) -> Dict[str, Any]:
        """Generate a telemetry report for the admin surface."""
        self.flush()
        return {
            "generated_at": datetime.now().isoformat(),
            "uptime_seconds": time.time() - self._start_time,
            "errors_24h": self.get_error_summary(24),
            "phases_24h": self.get_phase_summary(24),
            "payouts_24h": self.get_payout_summary(24),
            "performance_24h": self.get_performance_summary(24),
            "system_events_24h": self.get_system_events(24, limit=10),
        }

    def cleanup_old_data(self, days_to_keep: int = 30):
        cutoff_time = time.time() - (days_to_keep * 86400)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM metrics WHERE timestamp < ?",
                (cutoff_time,)
            )
            deleted = cursor.rowcount
            conn.commit()

        logger.info("Cleaned up %d old metric events", deleted)
        return deleted


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector(Path(os.getenv("HEIST_TELEMETRY_DB", "telemetry.db")))
    return _telemetry


def reset_telemetry() -> None:
    """Drop the singleton so the next access re-reads ``HEIST_TELEMETRY_DB``."""
    global _telemetry
    if _telemetry is not None:
        _telemetry.flush()
    _telemetry = None


class track_duration:
    """Context manager for tracking operation duration."""

    def __init__(self, operation: str, tags: Optional[Dict[str, str]] = None):
        self.operation = operation
        self.tags = tags or {}
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        telemetry = get_telemetry()
        telemetry.track_performance(self.operation, duration_ms, self.tags)

        if exc_type:
            telemetry.track_error(
                exc_type.__name__,
                command=self.operation,
                room_id=self.tags.get("room_id"),
                error_details=str(exc_val)
            )


__all__ = [
    "MetricType",
    "MetricEvent",
    "TelemetryCollector",
    "get_telemetry",
    "reset_telemetry",
    "track_duration",
]
