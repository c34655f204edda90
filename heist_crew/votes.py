"""Vote collection for the heist voting window."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import InvalidVoteError
from .models import Participant
from .rng import DeterministicRNG
from .state import HeistState

logger = logging.getLogger(__name__)


def normalize_username(username: str) -> str:
    return username.strip().lower()


def pick_winner(
    ballots: Sequence[Participant],
    offered: Sequence[str],
    rng: DeterministicRNG,
) -> str:
    """Plurality winner; ties go to the crime whose earliest counted vote came first.

    With no ballots a crime is drawn uniformly from ``offered``.
    """

    if not ballots:
        if not offered:
            raise InvalidVoteError("No crimes on offer")
        return rng.choice(list(offered))
    counts = Counter(ballot.vote for ballot in ballots)
    top = max(counts.values())
    earliest: Dict[str, datetime] = {}
    for ballot in ballots:
        if counts[ballot.vote] != top:
            continue
        current = earliest.get(ballot.vote)
        if current is None or ballot.voted_at < current:
            earliest[ballot.vote] = ballot.voted_at
    order = {crime_id: index for index, crime_id in enumerate(offered)}
    return min(earliest, key=lambda crime_id: (earliest[crime_id], order.get(crime_id, len(order))))


class VoteCollector:
    """Persists one ballot per participant; the last ballot a user casts counts."""

    def __init__(self, state: HeistState, system_users: Iterable[str] = ()) -> None:
        self._state = state
        self._system_users = {normalize_username(name) for name in system_users}
        self._session_id: Optional[int] = None
        self._offered: List[str] = []

    @property
    def is_open(self) -> bool:
        return self._session_id is not None

    @property
    def session_id(self) -> Optional[int]:
        return self._session_id

    @property
    def offered(self) -> List[str]:
        return list(self._offered)

    def open(self, session_id: int, offered: Sequence[str]) -> None:
        self._session_id = session_id
        self._offered = list(offered)

    def close(self) -> List[Participant]:
        """Stop accepting ballots and return the counted ones."""

        ballots = self.ballots()
        self._session_id = None
        self._offered = []
        return ballots

    def cast(self, username: str, crime_id: str, now: Optional[datetime] = None) -> bool:
        """Record a ballot. Returns ``True`` on the user's first vote this session."""

        if self._session_id is None:
            raise InvalidVoteError("Voting is closed")
        name = normalize_username(username)
        if not name or name in self._system_users:
            raise InvalidVoteError(f"{username!r} cannot vote")
        if crime_id not in self._offered:
            raise InvalidVoteError(f"'{crime_id}' is not one of tonight's jobs")
        first = self._state.upsert_vote(self._session_id, name, crime_id, now)
        logger.debug(
            "Vote in session %s: %s -> %s (%s)",
            self._session_id,
            name,
            crime_id,
            "new" if first else "recast",
        )
        return first

    def ballots(self) -> List[Participant]:
        if self._session_id is None:
            return []
        return self._state.participants(self._session_id)

    def tally(self) -> Dict[str, int]:
        counts = Counter(ballot.vote for ballot in self.ballots())
        return {crime_id: counts.get(crime_id, 0) for crime_id in self._offered}


__all__ = ["VoteCollector", "normalize_username", "pick_winner"]
