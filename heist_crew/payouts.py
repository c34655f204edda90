"""Exactly-once reward distribution for resolved heists."""
from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence

from .economy import EconomyLedger
from .errors import DuplicatePayoutGuard
from .models import CrimeOutcome, HeistSession, PayoutLine, PayoutReport
from .state import HeistState, RoomConfigStore
from .trust import TrustLedger

logger = logging.getLogger(__name__)

DISTRIBUTED_FLAG = "distributed_flag"

# Credit row lifecycle: pending -> crediting -> funded (currency paid) -> credited.
# A row that failed before funding is "failed"; one that failed after keeps "funded".
# "crediting" rows may or may not have been paid, so they are re-sent with the same key.
PENDING = "pending"
CREDITING = "crediting"
FUNDED = "funded"
CREDITED = "credited"
FAILED = "failed"


def credit_key(session_id: int, username: str) -> str:
    """Idempotency key handed to the ledger for one participant's share."""

    return f"heist:{session_id}:{username}"


def split_shares(total: int, usernames: Sequence[str]) -> Dict[str, int]:
    """Equal integer shares; the remainder goes to the alphabetically-first name."""

    names = sorted(set(usernames))
    if not names:
        return {}
    base, remainder = divmod(total, len(names))
    shares = {name: base for name in names}
    shares[names[0]] += remainder
    return shares


class PayoutDistributor:
    """Credits every participant of a session once, keyed by (session, user)."""

    def __init__(
        self,
        state: HeistState,
        config: RoomConfigStore,
        economy: EconomyLedger,
        trust: TrustLedger,
    ) -> None:
        self._state = state
        self._config = config
        self._economy = economy
        self._trust = trust

    def distribute(self, session: HeistSession, outcome: CrimeOutcome) -> PayoutReport:
        """Claim the session's distributed flag, then credit each participant.

        A second call for the same session is a no-op returning the recorded lines.
        """

        try:
            self._claim(session.id)
        except DuplicatePayoutGuard as guard:
            logger.info("Skipping distribution: %s", guard)
            report = self.report(session.id, outcome.total_payout)
            report.duplicate = True
            return report
        return self._run(session, outcome.total_payout, outcome.trust_delta)

    def resume(self, session: HeistSession) -> PayoutReport:
        """Finish a distribution interrupted by a restart using the persisted outcome."""

        if self._config.get(DISTRIBUTED_FLAG) != str(session.id):
            self._config.set(DISTRIBUTED_FLAG, session.id)
        return self._run(session, session.total_payout, session.trust_delta)

    def retry_failed(self, session_id: int, username: Optional[str] = None) -> PayoutReport:
        """Re-apply credits that did not complete, for one user or all of them."""

        session = self._state.require_session(session_id)
        for row in self._state.payout_credits(session_id):
            if row["status"] == CREDITED:
                continue
            if username is not None and row["username"] != username:
                continue
            self._apply(session, row)
        return self.report(session_id, session.total_payout)

    def report(self, session_id: int, total_payout: int) -> PayoutReport:
        lines = [
            PayoutLine(
                username=row["username"],
                amount=row["amount"],
                trust_delta=row["trust_delta"],
                status=row["status"],
                error=row["error"],
            )
            for row in self._state.payout_credits(session_id)
        ]
        return PayoutReport(session_id=session_id, total_payout=total_payout, lines=lines)

    def _claim(self, session_id: int) -> None:
        marker = str(session_id)
        if self._config.compare_and_set(DISTRIBUTED_FLAG, None, marker):
            return
        current = self._config.get(DISTRIBUTED_FLAG)
        if current == marker:
            raise DuplicatePayoutGuard(session_id)
        # left over from an earlier session
        if not self._config.compare_and_set(DISTRIBUTED_FLAG, current, marker):
            raise DuplicatePayoutGuard(session_id)

    def _run(self, session: HeistSession, total_payout: int, trust_delta: int) -> PayoutReport:
        participants = self._state.participants(session.id)
        shares = split_shares(total_payout, [p.username for p in participants])
        for username, amount in shares.items():
            self._state.add_payout_credit(session.id, username, amount, trust_delta)
        for row in self._state.payout_credits(session.id):
            if row["status"] != CREDITED:
                self._apply(session, row)
        report = self.report(session.id, total_payout)
        if report.failed:
            logger.warning(
                "Session %s finished with %d failed credits: %s",
                session.id,
                len(report.failed),
                ", ".join(report.failed),
            )
        return report

    def _apply(self, session: HeistSession, row: Dict[str, object]) -> None:
        username = str(row["username"])
        amount = int(row["amount"])
        status = row["status"]
        if status in (PENDING, CREDITING, FAILED):
            self._state.mark_payout_credit(session.id, username, CREDITING)
            try:
                if amount > 0:
                    self._economy.credit(username, amount, key=credit_key(session.id, username))
            except Exception as exc:
                logger.exception("Credit of %d to %s failed for session %s", amount, username, session.id)
                self._state.mark_payout_credit(session.id, username, FAILED, str(exc))
                return
            self._state.mark_payout_credit(session.id, username, FUNDED)
        try:
            self._trust.settle(session.id, username)
        except Exception as exc:
            logger.exception("Trust update for %s failed for session %s", username, session.id)
            self._state.mark_payout_credit(session.id, username, FUNDED, str(exc))


__all__ = ["DISTRIBUTED_FLAG", "PayoutDistributor", "credit_key", "split_shares"]
