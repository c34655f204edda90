"""Chat text for heist phases."""
from __future__ import annotations

from typing import List, Sequence

from .models import CrimeDefinition, CrimeOutcome, PayoutReport

PAYOUT_BATCH_SIZE = 5


def announcement(crimes: Sequence[CrimeDefinition], voting_seconds: float) -> str:
    options = ", ".join(
        f"{index}. {crime.name} ({crime.difficulty}, ${crime.payout_min}-${crime.payout_max})"
        for index, crime in enumerate(crimes, start=1)
    )
    return (
        f"Heist on! Vote with /heist_vote within {int(voting_seconds)}s. "
        f"Jobs: {options}"
    )


def departure(crime: CrimeDefinition, crew_size: int, seconds: float) -> str:
    if crew_size == 0:
        return f"Nobody showed up for the {crime.name}. The job goes ahead with an empty van."
    minutes = max(1, int(round(seconds / 60)))
    return f"Crew of {crew_size} heads out for the {crime.name}. Back in about {minutes} min."


def result(crime: CrimeDefinition, outcome: CrimeOutcome, crew_size: int) -> str:
    if crew_size == 0:
        return f"The {crime.name} fell through. No crew, no cash."
    if outcome.success:
        return f"The {crime.name} paid off: ${outcome.total_payout} split between {crew_size}."
    return f"The {crime.name} went bad. Crew lost {abs(outcome.trust_delta)} trust each."


def payout_lines(report: PayoutReport) -> List[str]:
    """Payout summary lines, ``PAYOUT_BATCH_SIZE`` participants per line."""

    entries = [f"{line.username}: ${line.amount}" for line in report.lines if line.amount > 0]
    return [
        "Payouts: " + ", ".join(entries[start : start + PAYOUT_BATCH_SIZE])
        for start in range(0, len(entries), PAYOUT_BATCH_SIZE)
    ]


def failure_notice() -> str:
    return "Heist called off: something went wrong. Crew lies low for a bit."


def resume_voting(seconds: float) -> str:
    return f"Had a hiccup there. Heist voting is still open for {int(seconds)} more seconds!"


def resume_progress() -> str:
    return "Back on track. The heist crew should be returning any minute now."


__all__ = [
    "PAYOUT_BATCH_SIZE",
    "announcement",
    "departure",
    "result",
    "payout_lines",
    "failure_notice",
    "resume_voting",
    "resume_progress",
]
