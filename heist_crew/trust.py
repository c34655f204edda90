"""Bounded per-user trust scores."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple

from .config import Settings
from .errors import PermissionDeniedError
from .models import TrustRecord
from .state import HeistState

logger = logging.getLogger(__name__)

# (minimum score, title), highest first
TRUST_TITLES: Tuple[Tuple[int, str], ...] = (
    (90, "Made Man"),
    (75, "Career Criminal"),
    (60, "Seasoned Crim"),
    (40, "Petty Crim"),
    (20, "Snitch Risk"),
    (0, "Rat"),
)


def title_for(score: int) -> str:
    for threshold, title in TRUST_TITLES:
        if score >= threshold:
            return title
    return TRUST_TITLES[-1][1]


class TrustLedger:
    """Reads and adjusts trust records, clamping to the configured bounds."""

    def __init__(
        self,
        state: HeistState,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._state = state
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, username: str) -> TrustRecord:
        """Return the user's record, or an unsaved default one."""

        record = self._state.get_trust(username)
        if record is None:
            record = TrustRecord(username=username, trust_score=self._settings.trust_default)
        return record

    def score(self, username: str) -> int:
        return self.get(username).trust_score

    def _bounds(self) -> Dict[str, int]:
        return {
            "default": self._settings.trust_default,
            "lower": self._settings.trust_min,
            "upper": self._settings.trust_max,
        }

    def adjust(self, username: str, delta: int) -> TrustRecord:
        return self._state.adjust_trust(username, delta, **self._bounds())

    def record_participation(self, username: str, delta: int) -> TrustRecord:
        return self._state.adjust_trust(
            username, delta, participated_at=self._clock(), **self._bounds()
        )

    def settle(self, session_id: int, username: str) -> bool:
        """Apply a funded payout row's trust change once; ``False`` if already settled."""

        return self._state.settle_payout_credit(
            session_id, username, now=self._clock(), **self._bounds()
        )

    def average(self, usernames: Iterable[str]) -> float:
        scores = [self.score(name) for name in usernames]
        if not scores:
            return float(self._settings.trust_default)
        return sum(scores) / len(scores)

    def title(self, username: str) -> str:
        return title_for(self.score(username))

    def vouch(self, giver: str, target: str, amount: int) -> TrustRecord:
        """Give ``amount`` trust from ``giver`` to ``target`` without debiting the giver."""

        if not 1 <= amount <= self._settings.vouch_max_amount:
            raise ValueError(
                f"Trust amount must be between 1 and {self._settings.vouch_max_amount}"
            )
        if giver == target:
            raise PermissionDeniedError(giver, "vouch", "cannot vouch for yourself")
        if self.score(giver) < self._settings.vouch_min_trust:
            raise PermissionDeniedError(
                giver,
                "vouch",
                f"needs at least {self._settings.vouch_min_trust} trust",
            )
        record = self.adjust(target, amount)
        logger.info("%s vouched for %s (+%d trust)", giver, target, amount)
        return record


__all__ = ["TrustLedger", "TRUST_TITLES", "title_for"]
