"""Configuration loading utilities for the heist crew."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    min_wait_hours: float
    max_wait_hours: float
    voting_seconds: float
    crime_min_seconds: float
    crime_max_seconds: float
    cooldown_seconds: float
    resume_voting_seconds: float
    resume_progress_seconds: float
    crimes_offered: int
    trust_min: int
    trust_max: int
    trust_default: int
    trust_vote_bonus: int
    trust_success_bonus: int
    trust_failure_penalty: int
    vouch_min_trust: int
    vouch_max_amount: int
    probability_floor: float
    probability_ceiling: float
    trust_weight: float
    group_bonus_per_member: float
    group_bonus_cap: float
    activity_min_users: int
    activity_min_messages: int
    activity_window_minutes: float
    admins: Tuple[str, ...]
    system_users: Tuple[str, ...]
    rooms: Tuple[str, ...]
    rng_seed: Optional[int] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        timing = data.get("timing", {})
        trust = data.get("trust", {})
        resolver = data.get("resolver", {})
        activity = data.get("activity", {})
        seed = data.get("rng_seed")
        settings = Settings(
            min_wait_hours=float(timing.get("min_wait_hours", 1)),
            max_wait_hours=float(timing.get("max_wait_hours", 10)),
            voting_seconds=float(timing.get("voting_seconds", 60)),
            crime_min_seconds=float(timing.get("crime_min_seconds", 1200)),
            crime_max_seconds=float(timing.get("crime_max_seconds", 2400)),
            cooldown_seconds=float(timing.get("cooldown_seconds", 300)),
            resume_voting_seconds=float(timing.get("resume_voting_seconds", 30)),
            resume_progress_seconds=float(timing.get("resume_progress_seconds", 60)),
            crimes_offered=int(data.get("crimes_offered", 3)),
            trust_min=int(trust.get("min", 0)),
            trust_max=int(trust.get("max", 100)),
            trust_default=int(trust.get("default", 50)),
            trust_vote_bonus=int(trust.get("vote_bonus", 1)),
            trust_success_bonus=int(trust.get("success_bonus", 2)),
            trust_failure_penalty=int(trust.get("failure_penalty", -1)),
            vouch_min_trust=int(trust.get("vouch_min_trust", 5)),
            vouch_max_amount=int(trust.get("vouch_max_amount", 5)),
            probability_floor=float(resolver.get("probability_floor", 0.05)),
            probability_ceiling=float(resolver.get("probability_ceiling", 0.95)),
            trust_weight=float(resolver.get("trust_weight", 0.2)),
            group_bonus_per_member=float(resolver.get("group_bonus_per_member", 0.02)),
            group_bonus_cap=float(resolver.get("group_bonus_cap", 0.1)),
            activity_min_users=int(activity.get("min_active_users", 0)),
            activity_min_messages=int(activity.get("min_messages", 0)),
            activity_window_minutes=float(activity.get("window_minutes", 60)),
            admins=tuple(str(name).strip().lower() for name in data.get("admins", []) or []),
            system_users=tuple(
                str(name).strip().lower() for name in data.get("system_users", []) or []
            ),
            rooms=tuple(str(room) for room in data.get("rooms", []) or []),
            rng_seed=int(seed) if seed is not None else None,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.min_wait_hours < 0 or self.max_wait_hours < self.min_wait_hours:
            raise ValueError("timing.max_wait_hours must be >= timing.min_wait_hours >= 0")
        if self.crime_max_seconds < self.crime_min_seconds:
            raise ValueError("timing.crime_max_seconds must be >= timing.crime_min_seconds")
        if not self.trust_min <= self.trust_default <= self.trust_max:
            raise ValueError("trust.default must lie within [trust.min, trust.max]")
        if not 0.0 <= self.probability_floor <= self.probability_ceiling <= 1.0:
            raise ValueError("resolver probability bounds must satisfy 0 <= floor <= ceiling <= 1")
        if self.crimes_offered < 1:
            raise ValueError("crimes_offered must be at least 1")


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings"]
