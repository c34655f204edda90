"""Currency ledger used for heist payouts."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Protocol

from .errors import PersistenceError

logger = logging.getLogger(__name__)

_LEDGER_SCHEMA = """
CREATE TABLE IF NOT EXISTS user_economy (
    username TEXT PRIMARY KEY,
    balance INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS economy_credits (
    key TEXT PRIMARY KEY,
    username TEXT NOT NULL,
    amount INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


class EconomyLedger(Protocol):
    """Per-user balances.

    ``credit`` must be atomic per user. A credit carrying a ``key`` already
    applied must leave the balance unchanged.
    """

    def get_balance(self, username: str) -> int:
        ...

    def credit(self, username: str, amount: int, key: Optional[str] = None) -> int:
        ...


class SqliteEconomyLedger:
    """Default ledger storing balances next to the heist tables."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        with self._connect() as conn:
            conn.executescript(_LEDGER_SCHEMA)
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(sqlite3.connect(self._db_path)) as conn:
                yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"Economy ledger unavailable: {exc}") from exc

    def get_balance(self, username: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT balance FROM user_economy WHERE username = ?",
                (username,),
            ).fetchone()
        return int(row[0]) if row else 0

    def credit(self, username: str, amount: int, key: Optional[str] = None) -> int:
        """Add ``amount`` to the user's balance and return the new balance.

        With a ``key``, the credit is recorded in the same transaction and a
        repeat of that key only returns the current balance.
        """

        with self._connect() as conn:
            applied = True
            if key is not None:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO economy_credits (key, username, amount) VALUES (?, ?, ?)",
                    (key, username, amount),
                )
                applied = cursor.rowcount == 1
            if applied:
                conn.execute(
                    "INSERT OR IGNORE INTO user_economy (username, balance) VALUES (?, 0)",
                    (username,),
                )
                conn.execute(
                    "UPDATE user_economy SET balance = balance + ? WHERE username = ?",
                    (amount, username),
                )
            row = conn.execute(
                "SELECT balance FROM user_economy WHERE username = ?",
                (username,),
            ).fetchone()
            conn.commit()
        balance = int(row[0]) if row else 0
        if applied:
            logger.debug("Credited %s with %d (balance %d)", username, amount, balance)
        else:
            logger.info("Credit %s already applied to %s; skipping", key, username)
        return balance

    def balances(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute("SELECT username, balance FROM user_economy").fetchall()
        return {name: int(balance) for name, balance in rows}


__all__ = ["EconomyLedger", "SqliteEconomyLedger"]
