"""Heist state management and persistence."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import NotFoundError, PersistenceError
from .models import Event, HeistSession, Participant, SessionStatus, TrustRecord

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS heist_config (
    room_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (room_id, key)
);
CREATE TABLE IF NOT EXISTS heist_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id TEXT NOT NULL,
    status TEXT NOT NULL,
    crime_type TEXT,
    participant_count INTEGER NOT NULL DEFAULT 0,
    total_payout INTEGER NOT NULL DEFAULT 0,
    success INTEGER,
    trust_delta INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_heist_sessions_room
    ON heist_sessions (room_id, status);
CREATE TABLE IF NOT EXISTS heist_participants (
    heist_id INTEGER NOT NULL,
    username TEXT NOT NULL,
    vote TEXT NOT NULL,
    payout INTEGER,
    joined_at TEXT NOT NULL,
    voted_at TEXT NOT NULL,
    PRIMARY KEY (heist_id, username)
);
CREATE TABLE IF NOT EXISTS user_trust (
    username TEXT PRIMARY KEY,
    trust_score INTEGER NOT NULL,
    last_participation_time TEXT,
    heists_participated INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS payout_credits (
    session_id INTEGER NOT NULL,
    username TEXT NOT NULL,
    amount INTEGER NOT NULL,
    trust_delta INTEGER NOT NULL,
    status TEXT NOT NULL,
    error TEXT,
    credited_at TEXT,
    PRIMARY KEY (session_id, username)
);
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    room_id TEXT NOT NULL,
    action TEXT NOT NULL,
    payload TEXT NOT NULL
);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class HeistState:
    """SQLite-backed persistence for sessions, participants, trust and room config."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(sqlite3.connect(self._db_path)) as conn:
                yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"Heist store unavailable: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements under ``BEGIN IMMEDIATE``; commit on exit, roll back on error."""

        try:
            with closing(sqlite3.connect(self._db_path, isolation_level=None)) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise PersistenceError(f"Heist store unavailable: {exc}") from exc

    # Room configuration ------------------------------------------------
    def config_get(self, room_id: str, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM heist_config WHERE room_id = ? AND key = ?",
                (room_id, key),
            ).fetchone()
        return row[0] if row else None

    def config_set(self, room_id: str, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "REPLACE INTO heist_config (room_id, key, value, updated_at) VALUES (?, ?, ?, ?)",
                (room_id, key, value, _utcnow().isoformat()),
            )
            conn.commit()

    def config_delete(self, room_id: str, key: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM heist_config WHERE room_id = ? AND key = ?",
                (room_id, key),
            )
            conn.commit()

    def config_compare_and_set(
        self,
        room_id: str,
        key: str,
        expected: Optional[str],
        value: Optional[str],
    ) -> bool:
        """Atomically replace ``key`` when it currently holds ``expected``.

        ``None`` stands for an absent key on either side.
        """

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT value FROM heist_config WHERE room_id = ? AND key = ?",
                (room_id, key),
            ).fetchone()
            current = row[0] if row else None
            if current != expected:
                return False
            if value is None:
                conn.execute(
                    "DELETE FROM heist_config WHERE room_id = ? AND key = ?",
                    (room_id, key),
                )
            else:
                conn.execute(
                    "REPLACE INTO heist_config (room_id, key, value, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (room_id, key, value, _utcnow().isoformat()),
                )
            return True

    def room_config(self, room_id: str) -> Dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key, value FROM heist_config WHERE room_id = ?",
                (room_id,),
            ).fetchall()
        return {key: value for key, value in rows}

    def known_rooms(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT room_id FROM heist_config ORDER BY room_id"
            ).fetchall()
        return [row[0] for row in rows]

    # Sessions ----------------------------------------------------------
    def create_session(self, room_id: str, now: Optional[datetime] = None) -> HeistSession:
        created_at = now or _utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO heist_sessions (room_id, status, created_at) VALUES (?, ?, ?)",
                (room_id, SessionStatus.ANNOUNCED.value, created_at.isoformat()),
            )
            conn.commit()
            session_id = cursor.lastrowid
        return HeistSession(
            id=session_id,
            room_id=room_id,
            status=SessionStatus.ANNOUNCED,
            created_at=created_at,
        )

    def get_session(self, session_id: int) -> Optional[HeistSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, room_id, status, crime_type, participant_count, total_payout, "
                "success, trust_delta, created_at, completed_at FROM heist_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        if not row:
            return None
        return self._session_from_row(row)

    def require_session(self, session_id: int) -> HeistSession:
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Heist session {session_id} not found")
        return session

    def active_session(self, room_id: str) -> Optional[HeistSession]:
        terminal = (SessionStatus.COMPLETED.value, SessionStatus.FAILED.value)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, room_id, status, crime_type, participant_count, total_payout, "
                "success, trust_delta, created_at, completed_at FROM heist_sessions "
                "WHERE room_id = ? AND status NOT IN (?, ?) ORDER BY id DESC LIMIT 1",
                (room_id, *terminal),
            ).fetchone()
        if not row:
            return None
        return self._session_from_row(row)

    def list_sessions(self, room_id: str, limit: int = 10) -> List[HeistSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, room_id, status, crime_type, participant_count, total_payout, "
                "success, trust_delta, created_at, completed_at FROM heist_sessions "
                "WHERE room_id = ? ORDER BY id DESC LIMIT ?",
                (room_id, limit),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def update_session(self, session: HeistSession) -> None:
        success = None if session.success is None else int(session.success)
        with self._connect() as conn:
            conn.execute(
                "UPDATE heist_sessions SET status = ?, crime_type = ?, participant_count = ?, "
                "total_payout = ?, success = ?, trust_delta = ?, completed_at = ? WHERE id = ?",
                (
                    session.status.value,
                    session.crime_type,
                    session.participant_count,
                    session.total_payout,
                    success,
                    session.trust_delta,
                    session.completed_at.isoformat() if session.completed_at else None,
                    session.id,
                ),
            )
            conn.commit()

    @staticmethod
    def _session_from_row(row) -> HeistSession:
        return HeistSession(
            id=row[0],
            room_id=row[1],
            status=SessionStatus(row[2]),
            crime_type=row[3],
            participant_count=row[4],
            total_payout=row[5],
            success=None if row[6] is None else bool(row[6]),
            trust_delta=row[7],
            created_at=datetime.fromisoformat(row[8]),
            completed_at=_parse_ts(row[9]),
        )

    # Participants ------------------------------------------------------
    def upsert_vote(
        self,
        heist_id: int,
        username: str,
        vote: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record ``vote`` and return ``True`` when this is the user's first vote."""

        voted_at = (now or _utcnow()).isoformat()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM heist_participants WHERE heist_id = ? AND username = ?",
                (heist_id, username),
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE heist_participants SET vote = ?, voted_at = ? "
                    "WHERE heist_id = ? AND username = ?",
                    (vote, voted_at, heist_id, username),
                )
            else:
                conn.execute(
                    "INSERT INTO heist_participants (heist_id, username, vote, joined_at, voted_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (heist_id, username, vote, voted_at, voted_at),
                )
            conn.commit()
        return row is None

    def participants(self, heist_id: int) -> List[Participant]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT heist_id, username, vote, joined_at, voted_at, payout "
                "FROM heist_participants WHERE heist_id = ? ORDER BY username",
                (heist_id,),
            ).fetchall()
        return [
            Participant(
                heist_id=row[0],
                username=row[1],
                vote=row[2],
                joined_at=datetime.fromisoformat(row[3]),
                voted_at=datetime.fromisoformat(row[4]),
                payout=row[5],
            )
            for row in rows
        ]

    # Trust -------------------------------------------------------------
    def get_trust(self, username: str) -> Optional[TrustRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT username, trust_score, last_participation_time, heists_participated "
                "FROM user_trust WHERE username = ?",
                (username,),
            ).fetchone()
        if not row:
            return None
        return TrustRecord(
            username=row[0],
            trust_score=row[1],
            last_participation_time=_parse_ts(row[2]),
            heists_participated=row[3],
        )

    def adjust_trust(
        self,
        username: str,
        delta: int,
        *,
        default: int,
        lower: int,
        upper: int,
        participated_at: Optional[datetime] = None,
    ) -> TrustRecord:
        """Add ``delta`` to the stored score in one statement, clamped to ``[lower, upper]``.

        A missing user starts at ``default``. ``participated_at`` also counts a heist.
        """

        with self._transaction() as conn:
            self._apply_trust(conn, username, delta, default, lower, upper, participated_at)
        record = self.get_trust(username)
        assert record is not None
        return record

    @staticmethod
    def _apply_trust(
        conn: sqlite3.Connection,
        username: str,
        delta: int,
        default: int,
        lower: int,
        upper: int,
        participated_at: Optional[datetime],
    ) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO user_trust (username, trust_score, heists_participated) "
            "VALUES (?, ?, 0)",
            (username, default),
        )
        conn.execute(
            "UPDATE user_trust SET trust_score = MAX(?, MIN(?, trust_score + ?)), "
            "heists_participated = heists_participated + ?, "
            "last_participation_time = COALESCE(?, last_participation_time) "
            "WHERE username = ?",
            (
                lower,
                upper,
                delta,
                1 if participated_at else 0,
                participated_at.isoformat() if participated_at else None,
                username,
            ),
        )

    # Payout credits ----------------------------------------------------
    def add_payout_credit(
        self,
        session_id: int,
        username: str,
        amount: int,
        trust_delta: int,
    ) -> None:
        """Write a ``pending`` credit row unless one already exists."""

        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO payout_credits "
                "(session_id, username, amount, trust_delta, status) VALUES (?, ?, ?, ?, 'pending')",
                (session_id, username, amount, trust_delta),
            )
            conn.commit()

    def mark_payout_credit(
        self,
        session_id: int,
        username: str,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        credited_at = _utcnow().isoformat() if status == "credited" else None
        with self._connect() as conn:
            conn.execute(
                "UPDATE payout_credits SET status = ?, error = ?, credited_at = ? "
                "WHERE session_id = ? AND username = ?",
                (status, error, credited_at, session_id, username),
            )
            conn.commit()

    def settle_payout_credit(
        self,
        session_id: int,
        username: str,
        *,
        default: int,
        lower: int,
        upper: int,
        now: datetime,
    ) -> bool:
        """Apply a funded row's trust change and payout record, and mark it ``credited``.

        Everything happens in one transaction, so a row is settled at most once.
        Returns ``False`` when the row was already credited or does not exist.
        """

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT amount, trust_delta, status FROM payout_credits "
                "WHERE session_id = ? AND username = ?",
                (session_id, username),
            ).fetchone()
            if row is None or row[2] == "credited":
                return False
            amount, trust_delta = row[0], row[1]
            self._apply_trust(conn, username, trust_delta, default, lower, upper, now)
            conn.execute(
                "UPDATE heist_participants SET payout = ? WHERE heist_id = ? AND username = ?",
                (amount, session_id, username),
            )
            conn.execute(
                "UPDATE payout_credits SET status = 'credited', error = NULL, credited_at = ? "
                "WHERE session_id = ? AND username = ?",
                (now.isoformat(), session_id, username),
            )
            return True

    def payout_credits(self, session_id: int) -> List[Dict[str, object]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT username, amount, trust_delta, status, error FROM payout_credits "
                "WHERE session_id = ? ORDER BY username",
                (session_id,),
            ).fetchall()
        return [
            {
                "username": row[0],
                "amount": row[1],
                "trust_delta": row[2],
                "status": row[3],
                "error": row[4],
            }
            for row in rows
        ]

    # Event log ---------------------------------------------------------
    def append_event(self, event: Event) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO events (timestamp, room_id, action, payload) VALUES (?, ?, ?, ?)",
                (
                    event.timestamp.isoformat(),
                    event.room_id,
                    event.action,
                    json.dumps(event.payload),
                ),
            )
            conn.commit()

    def export_events(self, room_id: Optional[str] = None) -> List[Event]:
        query = "SELECT timestamp, room_id, action, payload FROM events"
        params: tuple = ()
        if room_id is not None:
            query += " WHERE room_id = ?"
            params = (room_id,)
        query += " ORDER BY id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            Event(
                timestamp=datetime.fromisoformat(ts),
                room_id=room,
                action=action,
                payload=json.loads(payload),
            )
            for ts, room, action, payload in rows
        ]


class RoomConfigStore:
    """Key/value view over :class:`HeistState` scoped to one room."""

    def __init__(self, state: HeistState, room_id: str) -> None:
        self._state = state
        self.room_id = room_id

    def get(self, key: str) -> Optional[str]:
        return self._state.config_get(self.room_id, key)

    def set(self, key: str, value: object) -> None:
        self._state.config_set(self.room_id, key, str(value))

    def delete(self, key: str) -> None:
        self._state.config_delete(self.room_id, key)

    def compare_and_set(self, key: str, expected: Optional[str], value: Optional[object]) -> bool:
        return self._state.config_compare_and_set(
            self.room_id, key, expected, None if value is None else str(value)
        )

    def get_datetime(self, key: str) -> Optional[datetime]:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Ignoring malformed %s=%r for room %s", key, raw, self.room_id)
            return None

    def get_int(self, key: str) -> Optional[int]:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring malformed %s=%r for room %s", key, raw, self.room_id)
            return None

    def get_list(self, key: str) -> List[str]:
        raw = self.get(key)
        if not raw:
            return []
        try:
            return [str(item) for item in json.loads(raw)]
        except (json.JSONDecodeError, TypeError):
            logger.warning("Ignoring malformed %s=%r for room %s", key, raw, self.room_id)
            return []

    def set_list(self, key: str, values: List[str]) -> None:
        self.set(key, json.dumps(list(values)))

    def snapshot(self) -> Dict[str, str]:
        return self._state.room_config(self.room_id)


__all__ = ["HeistState", "RoomConfigStore"]
