"""Shared stubs for heist tests."""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from apscheduler.jobstores.base import ConflictingIdError, JobLookupError

from heist_crew import telemetry as telemetry_module
from heist_crew.catalog import CrimeCatalog
from heist_crew.config import get_settings
from heist_crew.models import CrimeDefinition
from heist_crew.rng import DeterministicRNG
from heist_crew.service import HeistService


class FakeJob:
    def __init__(self, job_id, func, run_date, args) -> None:
        self.id = job_id
        self.func = func
        self.run_date = run_date
        self.args = list(args)


class FakeScheduler:
    """Records date jobs instead of running them; tests fire them by hand."""

    def __init__(self) -> None:
        self.jobs: Dict[str, FakeJob] = {}
        self.history: List[FakeJob] = []
        self.running = False

    def add_job(self, func, trigger, *, run_date, args=(), id, replace_existing=False, **kwargs):
        assert trigger == "date"
        if id in self.jobs and not replace_existing:
            raise ConflictingIdError(id)
        job = FakeJob(id, func, run_date, args)
        self.jobs[id] = job
        self.history.append(job)
        return job

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def fire(self, job_id):
        job = self.jobs.pop(job_id)
        job.func(*job.args)
        return job

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedRNG(DeterministicRNG):
    """Seeded RNG whose ``random`` and ranged ``uniform`` draws can be scripted."""

    def __init__(
        self,
        seed: int = 7,
        randoms: Sequence[float] = (),
        uniforms: Dict[Tuple[float, float], List[float]] | None = None,
    ) -> None:
        super().__init__(seed)
        self.randoms = list(randoms)
        self.uniforms = {key: list(values) for key, values in (uniforms or {}).items()}
        self.random_calls = 0

    def random(self) -> float:
        self.random_calls += 1
        if self.randoms:
            return self.randoms.pop(0)
        return super().random()

    def uniform(self, a: float, b: float) -> float:
        scripted = self.uniforms.get((a, b))
        if scripted:
            return scripted.pop(0)
        return super().uniform(a, b)


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []

    def send(self, room_id: str, text: str) -> None:
        self.sent.append((room_id, text))

    def texts(self, room_id: str) -> List[str]:
        return [text for room, text in self.sent if room == room_id]


class FlakyLedger:
    """Economy ledger that fails credits for selected users until told otherwise."""

    def __init__(self, inner, failing: Sequence[str] = ()) -> None:
        self.inner = inner
        self.failing = set(failing)
        self.calls: List[Tuple[str, int]] = []

    def get_balance(self, username: str) -> int:
        return self.inner.get_balance(username)

    def credit(self, username: str, amount: int, key: Optional[str] = None) -> int:
        self.calls.append((username, amount))
        if username in self.failing:
            raise RuntimeError(f"ledger rejected {username}")
        return self.inner.credit(username, amount, key=key)


CRIMES = [
    CrimeDefinition("alpha", "Alpha Job", "easy", 0.5, 20, 40, ["a-team"]),
    CrimeDefinition("bravo", "Bravo Job", "medium", 0.4, 50, 100, ["b-team"]),
    CrimeDefinition("charlie", "Charlie Job", "hard", 0.2, 100, 200, ["c-team"]),
]


@pytest.fixture(autouse=True)
def isolated_telemetry(tmp_path, monkeypatch):
    monkeypatch.setenv("HEIST_TELEMETRY_DB", str(tmp_path / "telemetry.db"))
    telemetry_module.reset_telemetry()
    yield
    telemetry_module.reset_telemetry()


@pytest.fixture
def settings():
    return replace(
        get_settings(),
        activity_min_users=0,
        activity_min_messages=0,
        admins=("boss",),
        rng_seed=7,
    )


@pytest.fixture
def catalog():
    return CrimeCatalog.from_definitions(CRIMES)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_service(tmp_path, settings, catalog, clock):
    def _make(
        *,
        rng=None,
        economy=None,
        transport=None,
        scheduler=None,
        db_name: str = "heist.db",
        **overrides,
    ) -> HeistService:
        return HeistService(
            tmp_path / db_name,
            replace(settings, **overrides) if overrides else settings,
            catalog=catalog,
            economy=economy,
            transport=transport or RecordingTransport(),
            scheduler=scheduler or FakeScheduler(),
            rng_factory=(lambda room_id: rng) if rng is not None else None,
            clock=clock,
        )

    return _make
