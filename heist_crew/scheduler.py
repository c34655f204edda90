"""Per-room phase timers on top of APScheduler."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from .models import PhaseTask
from .rng import DeterministicRNG
from .state import RoomConfigStore

logger = logging.getLogger(__name__)

NEXT_HEIST_TIME = "next_heist_time"


def create_scheduler() -> BackgroundScheduler:
    return BackgroundScheduler(timezone="UTC")


class PhaseScheduler:
    """Owns the single armed timer of one room.

    Every timer is a ``date`` job with id ``heist:<room_id>``; arming a new one
    replaces the previous job so a room never has two pending fires.
    """

    def __init__(
        self,
        room_id: str,
        scheduler,
        config: RoomConfigStore,
        rng: DeterministicRNG,
        on_fire: Callable[[PhaseTask], None],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.room_id = room_id
        self._scheduler = scheduler
        self._config = config
        self._rng = rng
        self._on_fire = on_fire
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._fire_at: Optional[datetime] = None

    @property
    def job_id(self) -> str:
        return f"heist:{self.room_id}"

    def next_fire_time(self) -> Optional[datetime]:
        return self._fire_at

    def arm(self, task: PhaseTask, fire_at: datetime) -> None:
        self._scheduler.add_job(
            self._on_fire,
            "date",
            run_date=fire_at,
            args=[task],
            id=self.job_id,
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
        )
        self._fire_at = fire_at
        logger.debug(
            "Armed %s for %s (generation %d) at %s",
            self.job_id,
            task.phase.value,
            task.generation,
            fire_at.isoformat(),
        )

    def arm_in(self, task: PhaseTask, seconds: float) -> datetime:
        fire_at = self._clock() + timedelta(seconds=seconds)
        self.arm(task, fire_at)
        return fire_at

    def cancel_pending(self) -> None:
        """Drop the armed timer, if any."""

        try:
            self._scheduler.remove_job(self.job_id)
        except JobLookupError:
            pass
        self._fire_at = None

    def schedule_random(self, task: PhaseTask, min_delay: float, max_delay: float) -> datetime:
        """Arm the next-heist timer after a uniform delay and persist its fire time."""

        delay = self._rng.uniform(min_delay, max_delay)
        fire_at = self._clock() + timedelta(seconds=delay)
        self._config.set(NEXT_HEIST_TIME, fire_at.isoformat())
        self.arm(task, fire_at)
        logger.info("Next heist for room %s at %s", self.room_id, fire_at.isoformat())
        return fire_at

    def restore(self, task: PhaseTask, on_due: Callable[[], None]) -> Optional[datetime]:
        """Re-arm from the persisted next-heist time.

        Returns the persisted time, or ``None`` when nothing was persisted. A
        time already in the past calls ``on_due`` immediately on this thread
        instead of waiting again.
        """

        fire_at = self._config.get_datetime(NEXT_HEIST_TIME)
        if fire_at is None:
            return None
        if fire_at <= self._clock():
            logger.info(
                "Next heist for room %s was due at %s; starting now",
                self.room_id,
                fire_at.isoformat(),
            )
            self._fire_at = None
            on_due()
        else:
            self.arm(task, fire_at)
        return fire_at

    def clear_next_heist(self) -> None:
        self._config.delete(NEXT_HEIST_TIME)


__all__ = ["PhaseScheduler", "NEXT_HEIST_TIME", "create_scheduler"]
