"""Crime resolution rules."""

from __future__ import annotations

import math
from typing import Sequence

from .config import Settings
from .models import CrimeDefinition, CrimeOutcome
from .rng import DeterministicRNG


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


class CrimeResolver:
    """Turns a crime definition and the crew's trust into an outcome."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def trust_bonus(self, trust_scores: Sequence[int]) -> float:
        """Average-trust bonus plus a capped bonus for every member beyond the first."""

        if not trust_scores:
            return 0.0
        settings = self._settings
        span = settings.trust_max - settings.trust_min
        average = sum(trust_scores) / len(trust_scores)
        average_bonus = 0.0
        if span > 0:
            average_bonus = (average - settings.trust_default) / span * settings.trust_weight
        group_bonus = min(
            settings.group_bonus_per_member * (len(trust_scores) - 1),
            settings.group_bonus_cap,
        )
        return average_bonus + group_bonus

    def success_probability(self, crime: CrimeDefinition, trust_scores: Sequence[int]) -> float:
        return clamp(
            crime.base_probability + self.trust_bonus(trust_scores),
            self._settings.probability_floor,
            self._settings.probability_ceiling,
        )

    def resolve(
        self,
        rng: DeterministicRNG,
        crime: CrimeDefinition,
        trust_scores: Sequence[int],
    ) -> CrimeOutcome:
        if not trust_scores:
            return CrimeOutcome(success=False, total_payout=0, trust_delta=0)
        probability = self.success_probability(crime, trust_scores)
        roll = rng.random()
        if roll < probability:
            per_member = rng.uniform(crime.payout_min, crime.payout_max)
            return CrimeOutcome(
                success=True,
                total_payout=int(math.floor(per_member * len(trust_scores))),
                trust_delta=self._settings.trust_success_bonus,
                success_probability=probability,
                roll=roll,
            )
        return CrimeOutcome(
            success=False,
            total_payout=0,
            trust_delta=self._settings.trust_failure_penalty,
            success_probability=probability,
            roll=roll,
        )


__all__ = ["CrimeResolver", "clamp"]
