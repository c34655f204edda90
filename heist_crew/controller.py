"""Per-room heist state machine."""
from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, Optional, Tuple

from . import messages
from .catalog import CrimeCatalog
from .config import Settings
from .economy import EconomyLedger
from .errors import InvalidVoteError, NotFoundError, PersistenceError, WrongPhaseError
from .models import (
    CrimeOutcome,
    Event,
    HeistPhase,
    HeistSession,
    HeistStatus,
    PayoutReport,
    PhaseTask,
    SessionStatus,
)
from .payouts import DISTRIBUTED_FLAG, PayoutDistributor
from .resolver import CrimeResolver
from .rng import DeterministicRNG
from .scheduler import NEXT_HEIST_TIME, PhaseScheduler
from .state import HeistState, RoomConfigStore
from .telemetry import get_telemetry, track_duration
from .transport import ChatTransport, LoggingTransport
from .trust import TrustLedger
from .votes import VoteCollector, normalize_username, pick_winner

logger = logging.getLogger(__name__)

HEIST_STATE = "heist_state"
GENERATION = "generation"
PHASE_DEADLINE = "phase_deadline"
CURRENT_SESSION_ID = "current_session_id"
CURRENT_CRIME_ID = "current_crime_id"
OFFERED_CRIMES = "offered_crimes"

FORCE_ADVANCE_PHASES = (HeistPhase.VOTING, HeistPhase.IN_PROGRESS)
FORCE_START_PHASES = (HeistPhase.IDLE, HeistPhase.COOLDOWN)


class RoomHeistController:
    """Owns one room's heist cycle.

    Every state change runs under the room lock. Each phase entry bumps the
    generation counter; a timer task whose generation or phase no longer
    matches is dropped when it fires.
    """

    def __init__(
        self,
        room_id: str,
        *,
        settings: Settings,
        state: HeistState,
        catalog: CrimeCatalog,
        economy: EconomyLedger,
        trust: TrustLedger,
        scheduler,
        transport: Optional[ChatTransport] = None,
        rng: Optional[DeterministicRNG] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.room_id = room_id
        self._settings = settings
        self._state = state
        self._catalog = catalog
        self._trust = trust
        self._transport: ChatTransport = transport or LoggingTransport()
        self._rng = rng or DeterministicRNG.for_room(room_id, settings.rng_seed)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._config = RoomConfigStore(state, room_id)
        self._votes = VoteCollector(state, settings.system_users)
        self._resolver = CrimeResolver(settings)
        self._payouts = PayoutDistributor(state, self._config, economy, trust)
        self._timer = PhaseScheduler(
            room_id, scheduler, self._config, self._rng, self._on_timer, self._clock
        )
        self._phase = HeistPhase.IDLE
        self._generation = 0
        self._session: Optional[HeistSession] = None
        self._halted = False
        self._forced = False
        self._activity: Deque[Tuple[datetime, str]] = deque()

    # Introspection -----------------------------------------------------
    @property
    def phase(self) -> HeistPhase:
        return self._phase

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def config(self) -> RoomConfigStore:
        return self._config

    def status(self) -> HeistStatus:
        with self._lock:
            next_event = self._timer.next_fire_time()
            if next_event is None and self._phase is HeistPhase.IDLE:
                next_event = self._config.get_datetime(NEXT_HEIST_TIME)
            votes: Dict[str, int] = {}
            offered = []
            if self._phase is HeistPhase.VOTING:
                offered = self._votes.offered
                votes = self._votes.tally()
            return HeistStatus(
                room_id=self.room_id,
                state=self._phase,
                next_event_time=next_event,
                generation=self._generation,
                session_id=self._session.id if self._session else None,
                offered_crimes=offered,
                votes=votes,
                halted=self._halted,
            )

    # Timer entry points ------------------------------------------------
    def _on_timer(self, task: PhaseTask) -> None:
        self.advance(task)

    def _is_current(self, task: PhaseTask) -> bool:
        return (
            not self._halted
            and task.room_id == self.room_id
            and task.generation == self._generation
            and task.phase is self._phase
        )

    def advance(self, task: Optional[PhaseTask] = None) -> bool:
        """Run the current phase's completion logic.

        ``task`` is the record carried by a fired timer; without one the call
        is a force-advance. Returns ``False`` when a stale task was dropped.
        """

        with self._lock:
            if task is not None and not self._is_current(task):
                logger.info(
                    "Dropping stale %s timer for room %s (generation %d, now %d in %s)",
                    task.phase.value,
                    self.room_id,
                    task.generation,
                    self._generation,
                    self._phase.value,
                )
                get_telemetry().track_system_event(
                    "stale_timer_dropped",
                    source=self.room_id,
                    reason=f"{task.phase.value}@{task.generation}",
                )
                return False
            phase = self._phase
            if phase is HeistPhase.IDLE and task is not None:
                self.transition(HeistPhase.ANNOUNCING)
                return True
            completion = {
                HeistPhase.VOTING: self._complete_voting,
                HeistPhase.IN_PROGRESS: self._complete_crime,
                HeistPhase.COOLDOWN: self._complete_cooldown,
            }.get(phase)
            if completion is None:
                raise WrongPhaseError(phase.value, "advance")
            self._timer.cancel_pending()
            self._run_guarded(phase, completion)
            return True

    def transition(self, target: HeistPhase) -> None:
        """Start a heist from IDLE, subject to the activity gate."""

        if target is not HeistPhase.ANNOUNCING:
            raise ValueError(f"Only {HeistPhase.ANNOUNCING.value} can be entered directly")
        with self._lock:
            if self._phase is not HeistPhase.IDLE:
                raise WrongPhaseError(self._phase.value, "start a heist")
            self._timer.cancel_pending()
            self._run_guarded(HeistPhase.IDLE, lambda: self._start_heist(gated=True))

    # Privileged operations ---------------------------------------------
    def force_advance(self) -> HeistStatus:
        with self._lock:
            if self._halted:
                raise WrongPhaseError("HALTED", "force-advance")
            if self._phase not in FORCE_ADVANCE_PHASES:
                raise WrongPhaseError(self._phase.value, "force-advance")
            logger.info("Force-advancing room %s from %s", self.room_id, self._phase.value)
            self._forced = True
            try:
                self.advance()
            finally:
                self._forced = False
            return self.status()

    def force_start(self) -> HeistStatus:
        with self._lock:
            if self._phase not in FORCE_START_PHASES:
                raise WrongPhaseError(self._phase.value, "force-start")
            logger.info("Force-starting heist in room %s from %s", self.room_id, self._phase.value)
            self._halted = False
            self._timer.cancel_pending()
            self._forced = True
            try:
                self._run_guarded(self._phase, lambda: self._start_heist(gated=False))
            finally:
                self._forced = False
            return self.status()

    def resume_after_halt(self) -> HeistStatus:
        with self._lock:
            if not self._halted:
                raise WrongPhaseError(self._phase.value, "recover")
            logger.info("Resuming halted room %s from %s", self.room_id, self._phase.value)
            return self.recover()

    def retry_payouts(self, session_id: int, username: Optional[str] = None) -> PayoutReport:
        with self._lock:
            session = self._state.require_session(session_id)
            if session.room_id != self.room_id:
                raise NotFoundError(f"Session {session_id} does not belong to room {self.room_id}")
            report = self._payouts.retry_failed(session_id, normalize_username(username) if username else None)
            self._record("payout_retry", {"session_id": session_id, "failed": report.failed})
            return report

    # Participant operations --------------------------------------------
    def cast_vote(self, username: str, choice: str) -> str:
        """Record a vote and return the crime id it counted for."""

        with self._lock:
            if self._halted:
                raise WrongPhaseError("HALTED", "vote")
            if self._phase is not HeistPhase.VOTING or not self._votes.is_open:
                raise WrongPhaseError(self._phase.value, "vote")
            crime_id = self._catalog.match(choice, self._votes.offered)
            if crime_id is None:
                raise InvalidVoteError(f"'{choice}' is not one of tonight's jobs")
            name = normalize_username(username)
            first = self._votes.cast(name, crime_id, self._clock())
            if first and self._settings.trust_vote_bonus:
                self._trust.adjust(name, self._settings.trust_vote_bonus)
            get_telemetry().track_vote(self.room_id, name, crime_id, recast=not first)
            self._record("heist_vote", {"username": name, "crime_id": crime_id, "first": first})
            return crime_id

    def record_activity(self, username: str, now: Optional[datetime] = None) -> None:
        name = normalize_username(username)
        if not name or name in self._settings.system_users:
            return
        with self._lock:
            moment = now or self._clock()
            self._activity.append((moment, name))
            self._prune_activity(moment)

    def _prune_activity(self, now: datetime) -> None:
        cutoff = now - timedelta(minutes=self._settings.activity_window_minutes)
        while self._activity and self._activity[0][0] < cutoff:
            self._activity.popleft()

    def _activity_ok(self) -> bool:
        self._prune_activity(self._clock())
        users = {name for _, name in self._activity}
        return (
            len(users) >= self._settings.activity_min_users
            and len(self._activity) >= self._settings.activity_min_messages
        )

    # Phase logic -------------------------------------------------------
    def _start_heist(self, *, gated: bool) -> None:
        if gated and not self._activity_ok():
            logger.info("Room %s too quiet for a heist; rescheduling", self.room_id)
            get_telemetry().track_system_event(
                "heist_skipped_inactive", source=self.room_id
            )
            self._schedule_next()
            return
        now = self._clock()
        leftover = self._state.active_session(self.room_id)
        if leftover is not None:
            logger.warning("Closing leftover session %s in room %s", leftover.id, self.room_id)
            self._fail_session(leftover, now)
        self._enter(HeistPhase.ANNOUNCING)
        self._timer.clear_next_heist()
        session = self._state.create_session(self.room_id, now)
        self._session = session
        crimes = self._catalog.sample(self._rng, self._settings.crimes_offered)
        if not crimes:
            raise NotFoundError("Crime catalog is empty")
        offered = [crime.id for crime in crimes]
        self._config.set(CURRENT_SESSION_ID, session.id)
        self._config.set_list(OFFERED_CRIMES, offered)
        self._config.delete(CURRENT_CRIME_ID)
        self._config.delete(DISTRIBUTED_FLAG)
        self._record("heist_announced", {"session_id": session.id, "offered": offered})
        self._say(messages.announcement(crimes, self._settings.voting_seconds))

        session.status = SessionStatus.VOTING
        self._state.update_session(session)
        self._votes.open(session.id, offered)
        self._enter(HeistPhase.VOTING)
        self._arm(self._settings.voting_seconds)

    def _complete_voting(self) -> None:
        session = self._require_session()
        offered = self._votes.offered or self._config.get_list(OFFERED_CRIMES)
        self._votes.close()
        ballots = self._state.participants(session.id)
        crime_id = pick_winner(ballots, offered, self._rng)
        self._config.set(CURRENT_CRIME_ID, crime_id)
        session.crime_type = crime_id
        session.participant_count = len(ballots)
        session.status = SessionStatus.IN_PROGRESS
        self._state.update_session(session)
        self._record(
            "heist_departed",
            {"session_id": session.id, "crime_id": crime_id, "crew": [b.username for b in ballots]},
        )
        self._enter(HeistPhase.IN_PROGRESS)
        duration = self._rng.uniform(
            self._settings.crime_min_seconds, self._settings.crime_max_seconds
        )
        self._arm(duration)
        crime = self._catalog.get(crime_id)
        self._say(messages.departure(crime, len(ballots), duration))

    def _complete_crime(self) -> None:
        session = self._require_session()
        crime_id = self._config.get(CURRENT_CRIME_ID) or session.crime_type
        if not crime_id:
            raise NotFoundError(f"Session {session.id} has no chosen crime")
        crime = self._catalog.get(crime_id)
        participants = self._state.participants(session.id)
        scores = [self._trust.score(p.username) for p in participants]
        outcome = self._resolver.resolve(self._rng, crime, scores)
        session.success = outcome.success
        session.total_payout = outcome.total_payout
        session.trust_delta = outcome.trust_delta
        session.participant_count = len(participants)
        session.status = SessionStatus.DISTRIBUTING
        self._state.update_session(session)
        self._record(
            "heist_resolved",
            {
                "session_id": session.id,
                "crime_id": crime_id,
                "success": outcome.success,
                "total_payout": outcome.total_payout,
                "probability": outcome.success_probability,
                "roll": outcome.roll,
            },
        )
        self._enter(HeistPhase.DISTRIBUTING)
        self._say(messages.result(crime, outcome, len(participants)))
        self._distribute(session, outcome)

    def _distribute(self, session: HeistSession, outcome: Optional[CrimeOutcome] = None) -> None:
        if outcome is not None:
            report = self._payouts.distribute(session, outcome)
        else:
            report = self._payouts.resume(session)
        get_telemetry().track_payout(
            self.room_id,
            session.id,
            report.credited_total(),
            participants=len(report.lines),
            success=bool(session.success),
            failed=len(report.failed),
        )
        if not report.duplicate:
            for line in messages.payout_lines(report):
                self._say(line)
        session.status = SessionStatus.COMPLETED
        session.completed_at = self._clock()
        self._state.update_session(session)
        self._record(
            "heist_completed",
            {
                "session_id": session.id,
                "total_payout": session.total_payout,
                "failed_credits": report.failed,
            },
        )
        self._clear_session()
        self._enter(HeistPhase.COOLDOWN)
        self._arm(self._settings.cooldown_seconds)

    def _complete_cooldown(self) -> None:
        self._enter(HeistPhase.IDLE)
        self._config.delete(PHASE_DEADLINE)
        self._schedule_next()

    def _schedule_next(self) -> None:
        task = PhaseTask(self.room_id, self._generation, HeistPhase.IDLE)
        self._timer.schedule_random(
            task,
            self._settings.min_wait_hours * 3600,
            self._settings.max_wait_hours * 3600,
        )

    # Failure handling --------------------------------------------------
    def _run_guarded(self, phase: HeistPhase, action: Callable[[], None]) -> None:
        # track_duration records the error metric for anything raised by action
        try:
            with track_duration(f"phase:{phase.value}", tags={"room_id": self.room_id}):
                action()
        except PersistenceError as exc:
            self._halt(exc)
        except Exception as exc:
            logger.exception("Heist %s logic failed in room %s", phase.value, self.room_id)
            try:
                self._fallback(f"{type(exc).__name__}: {exc}")
            except PersistenceError as persist_exc:
                self._track_halt_error("fallback", persist_exc)
                self._halt(persist_exc)

    def _fallback(self, reason: str) -> None:
        """Abandon the current session and park the room in COOLDOWN."""

        self._timer.cancel_pending()
        self._votes.close()
        session = self._session
        if session is None:
            session_id = self._config.get_int(CURRENT_SESSION_ID)
            session = self._state.get_session(session_id) if session_id else None
        if session is not None and not session.status.terminal:
            self._fail_session(session, self._clock())
        self._clear_session()
        self._record("heist_fallback", {"reason": reason, "session_id": session.id if session else None})
        get_telemetry().track_system_event("fallback_to_cooldown", source=self.room_id, reason=reason)
        self._enter(HeistPhase.COOLDOWN)
        self._arm(self._settings.cooldown_seconds)
        self._say(messages.failure_notice())

    def _fail_session(self, session: HeistSession, now: datetime) -> None:
        session.status = SessionStatus.FAILED
        session.completed_at = now
        if session.success is None:
            session.success = False
        self._state.update_session(session)

    def _halt(self, exc: PersistenceError) -> None:
        logger.error("Halting heist cycle in room %s: %s", self.room_id, exc)
        self._halted = True
        self._timer.cancel_pending()
        get_telemetry().track_system_event("room_halted", source=self.room_id, reason=str(exc))

    def _track_halt_error(self, command: str, exc: PersistenceError) -> None:
        get_telemetry().track_error(
            type(exc).__name__, command=command, room_id=self.room_id, error_details=str(exc)
        )

    # Recovery ----------------------------------------------------------
    def recover(self) -> HeistStatus:
        """Rebuild in-memory state from the room's persisted config and re-arm timers."""

        with self._lock:
            self._halted = False
            try:
                self._recover()
            except PersistenceError as exc:
                self._track_halt_error("recover", exc)
                self._halt(exc)
            return self.status()

    def _recover(self) -> None:
        raw_phase = self._config.get(HEIST_STATE)
        try:
            phase = HeistPhase(raw_phase) if raw_phase else HeistPhase.IDLE
        except ValueError:
            logger.warning("Unknown persisted phase %r for room %s", raw_phase, self.room_id)
            phase = HeistPhase.IDLE
        self._phase = phase
        self._generation = self._config.get_int(GENERATION) or 0
        session_id = self._config.get_int(CURRENT_SESSION_ID)
        session = self._state.get_session(session_id) if session_id else None
        self._session = session if session and not session.status.terminal else None
        logger.info("Recovering room %s in %s (generation %d)", self.room_id, phase.value, self._generation)
        get_telemetry().track_system_event("room_recovered", source=self.room_id, reason=phase.value)

        if phase is HeistPhase.IDLE:
            self._run_guarded(phase, self._restore_idle)
        elif phase is HeistPhase.ANNOUNCING:
            self._run_guarded(phase, lambda: self._fallback("interrupted while announcing"))
        elif phase is HeistPhase.VOTING:
            self._run_guarded(phase, self._resume_voting)
        elif phase is HeistPhase.IN_PROGRESS:
            self._run_guarded(phase, self._resume_progress)
        elif phase is HeistPhase.DISTRIBUTING:
            self._run_guarded(phase, lambda: self._distribute(self._require_session()))
        elif phase is HeistPhase.COOLDOWN:
            self._run_guarded(phase, self._resume_cooldown)

    def _restore_idle(self) -> None:
        task = PhaseTask(self.room_id, self._generation, HeistPhase.IDLE)
        # a past-due start skips the activity gate; activity is not persisted
        restored = self._timer.restore(task, lambda: self._start_heist(gated=False))
        if restored is None:
            self._schedule_next()

    def _resume_voting(self) -> None:
        session = self._require_session()
        self._votes.open(session.id, self._config.get_list(OFFERED_CRIMES))
        remaining = self._remaining(self._settings.resume_voting_seconds)
        self._bump_and_arm(remaining)
        self._say(messages.resume_voting(remaining))

    def _resume_progress(self) -> None:
        self._require_session()
        self._bump_and_arm(self._remaining(self._settings.resume_progress_seconds))
        self._say(messages.resume_progress())

    def _resume_cooldown(self) -> None:
        deadline = self._config.get_datetime(PHASE_DEADLINE)
        if deadline is not None and deadline > self._clock():
            self._bump_and_arm((deadline - self._clock()).total_seconds())
        else:
            self._complete_cooldown()

    def _remaining(self, grace: float) -> float:
        deadline = self._config.get_datetime(PHASE_DEADLINE)
        if deadline is None:
            return grace
        remaining = (deadline - self._clock()).total_seconds()
        return remaining if remaining > 0 else grace

    # Helpers -----------------------------------------------------------
    def _enter(self, phase: HeistPhase) -> None:
        source = self._phase
        self._generation += 1
        self._phase = phase
        self._config.set(HEIST_STATE, phase.value)
        self._config.set(GENERATION, self._generation)
        logger.info(
            "Room %s: %s -> %s (generation %d)",
            self.room_id,
            source.value,
            phase.value,
            self._generation,
        )
        get_telemetry().track_phase_transition(
            self.room_id, source.value, phase.value, generation=self._generation, forced=self._forced
        )

    def _bump_and_arm(self, seconds: float) -> None:
        self._generation += 1
        self._config.set(GENERATION, self._generation)
        self._arm(seconds)

    def _arm(self, seconds: float) -> None:
        task = PhaseTask(self.room_id, self._generation, self._phase)
        fire_at = self._timer.arm_in(task, seconds)
        self._config.set(PHASE_DEADLINE, fire_at.isoformat())

    def _require_session(self) -> HeistSession:
        if self._session is not None:
            return self._session
        session_id = self._config.get_int(CURRENT_SESSION_ID)
        if session_id is None:
            raise NotFoundError(f"Room {self.room_id} has no active session")
        session = self._state.require_session(session_id)
        if session.status.terminal:
            raise NotFoundError(f"Session {session_id} is already {session.status.value}")
        self._session = session
        return session

    def _clear_session(self) -> None:
        self._session = None
        self._config.delete(CURRENT_SESSION_ID)
        self._config.delete(CURRENT_CRIME_ID)
        self._config.delete(OFFERED_CRIMES)

    def _record(self, action: str, payload: Dict[str, object]) -> None:
        self._state.append_event(
            Event(timestamp=self._clock(), room_id=self.room_id, action=action, payload=payload)
        )

    def _say(self, text: str) -> None:
        try:
            self._transport.send(self.room_id, text)
        except Exception:  # chat delivery must not break the cycle
            logger.exception("Failed to deliver heist message to room %s", self.room_id)


__all__ = ["RoomHeistController"]
