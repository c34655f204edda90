"""End-to-end heist cycles driven through a fake scheduler."""
from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import FakeScheduler, RecordingTransport, ScriptedRNG
from heist_crew.controller import CURRENT_CRIME_ID, HEIST_STATE
from heist_crew.discord_bot import _format_status
from heist_crew.errors import (
    InvalidVoteError,
    PermissionDeniedError,
    PersistenceError,
    WrongPhaseError,
)
from heist_crew.models import HeistPhase, SessionStatus
from heist_crew.scheduler import NEXT_HEIST_TIME
from heist_crew.telemetry import get_telemetry

JOB = "heist:room"


def _winning_rng():
    return ScriptedRNG(randoms=[0.0], uniforms={(20, 40): [30.0]})


def _into_voting(service):
    controller = service.controller_for("room")
    assert controller.phase is HeistPhase.IDLE
    service.scheduler.fire(JOB)
    assert controller.phase is HeistPhase.VOTING
    return controller


def test_full_cycle_pays_the_crew(make_service):
    """Three votes (alpha, alpha, bravo) run a successful alpha job paying 30 each."""

    transport = RecordingTransport()
    service = make_service(rng=_winning_rng(), transport=transport)
    controller = _into_voting(service)
    session_id = controller.status().session_id

    service.cast_vote("room", "a", "alpha")
    service.cast_vote("room", "b", "1")
    service.cast_vote("room", "c", "Bravo Job")
    assert controller.status().votes == {"alpha": 2, "bravo": 1, "charlie": 0}

    service.scheduler.fire(JOB)
    assert controller.phase is HeistPhase.IN_PROGRESS
    assert service.state.get_session(session_id).crime_type == "alpha"

    service.scheduler.fire(JOB)
    assert controller.phase is HeistPhase.COOLDOWN
    assert service.economy.balances() == {"a": 30, "b": 30, "c": 30}
    assert service.trust.score("a") == 53
    assert "Payouts: a: $30, b: $30, c: $30" in transport.texts("room")

    session = service.state.get_session(session_id)
    assert session.status is SessionStatus.COMPLETED
    assert session.success is True
    assert session.total_payout == 90

    service.scheduler.fire(JOB)
    assert controller.phase is HeistPhase.IDLE
    assert service.scheduler.jobs[JOB].args[0].phase is HeistPhase.IDLE
    assert controller.config.get(NEXT_HEIST_TIME) is not None


def test_zero_participants_fail_without_a_draw(make_service):
    rng = _winning_rng()
    service = make_service(rng=rng)
    controller = _into_voting(service)
    session_id = controller.status().session_id

    service.scheduler.fire(JOB)
    service.scheduler.fire(JOB)

    assert controller.phase is HeistPhase.COOLDOWN
    assert rng.random_calls == 0
    session = service.state.get_session(session_id)
    assert session.status is SessionStatus.COMPLETED
    assert session.success is False
    assert session.participant_count == 0
    assert service.economy.balances() == {}


def test_repeated_force_advance_distributes_once(make_service):
    service = make_service(rng=_winning_rng())
    controller = _into_voting(service)
    session_id = controller.status().session_id
    service.cast_vote("room", "a", "alpha")
    voting_job = service.scheduler.jobs[JOB]

    service.force_advance("room", "Boss")
    in_progress_job = service.scheduler.jobs[JOB]
    service.force_advance("room", "boss")
    with pytest.raises(WrongPhaseError):
        service.force_advance("room", "boss")

    # timers armed before the forced moves are stale now
    assert controller.advance(voting_job.args[0]) is False
    assert controller.advance(in_progress_job.args[0]) is False

    assert controller.phase is HeistPhase.COOLDOWN
    assert service.economy.balances() == {"a": 30}
    assert len(service.state.payout_credits(session_id)) == 1


def test_stale_timer_is_dropped(make_service):
    service = make_service()
    controller = _into_voting(service)
    stale = service.scheduler.jobs[JOB]
    generation = controller.generation

    service.force_advance("room", "boss")

    assert controller.advance(stale.args[0]) is False
    assert controller.phase is HeistPhase.IN_PROGRESS
    assert controller.generation == generation + 1


def test_force_advance_needs_a_running_heist(make_service):
    service = make_service()
    service.controller_for("room")

    with pytest.raises(WrongPhaseError):
        service.force_advance("room", "boss")


def test_force_advance_with_no_votes_picks_an_offered_job(make_service):
    service = make_service()
    controller = _into_voting(service)
    session_id = controller.status().session_id

    status = service.force_advance("room", "boss")

    assert status.state is HeistPhase.IN_PROGRESS
    assert service.state.get_session(session_id).crime_type in {"alpha", "bravo", "charlie"}


def test_missing_crime_falls_back_to_cooldown(make_service):
    transport = RecordingTransport()
    service = make_service(transport=transport)
    controller = _into_voting(service)
    session_id = controller.status().session_id
    service.cast_vote("room", "a", "alpha")
    service.force_advance("room", "boss")
    controller.config.set(CURRENT_CRIME_ID, "bogus")

    status = service.force_advance("room", "boss")

    assert status.state is HeistPhase.COOLDOWN
    assert controller.config.get(HEIST_STATE) == "COOLDOWN"
    assert service.state.get_session(session_id).status is SessionStatus.FAILED
    assert service.economy.balances() == {}
    assert transport.texts("room")[-1].startswith("Heist called off")
    assert JOB in service.scheduler.jobs


def test_vote_outside_voting_is_rejected(make_service):
    service = make_service()
    service.controller_for("room")

    with pytest.raises(WrongPhaseError):
        service.cast_vote("room", "a", "alpha")


def test_vote_for_unknown_job_is_rejected(make_service):
    service = make_service()
    _into_voting(service)

    with pytest.raises(InvalidVoteError):
        service.cast_vote("room", "a", "zulu")


def test_first_vote_earns_trust_once(make_service):
    service = make_service()
    _into_voting(service)

    service.cast_vote("room", "a", "alpha")
    service.cast_vote("room", "a", "bravo")

    assert service.trust.score("a") == 51
    assert service.get_status("room").votes["bravo"] == 1


def test_quiet_room_is_rescheduled(make_service):
    service = make_service(activity_min_users=2, activity_min_messages=2)
    controller = service.controller_for("room")
    service.scheduler.fire(JOB)

    assert controller.phase is HeistPhase.IDLE
    assert len(service.scheduler.history) == 2
    assert service.scheduler.jobs[JOB].args[0].phase is HeistPhase.IDLE
    assert controller.status().session_id is None


def test_active_room_starts(make_service):
    service = make_service(activity_min_users=2, activity_min_messages=2)
    controller = service.controller_for("room")
    service.record_activity("room", "a")
    service.record_activity("room", "b")
    service.record_activity("room", "[server]")

    service.scheduler.fire(JOB)

    assert controller.phase is HeistPhase.VOTING


def test_past_due_restart_starts_heist(make_service, clock):
    first = make_service()
    first.controller_for("room")
    assert first.state.room_config("room")[NEXT_HEIST_TIME]

    clock.advance(11 * 3600)
    scheduler = FakeScheduler()
    # activity is not persisted, so the gate is skipped for an overdue heist
    second = make_service(scheduler=scheduler, activity_min_users=5, activity_min_messages=5)
    controller = second.controller_for("room")

    assert controller.phase is HeistPhase.VOTING
    assert scheduler.jobs[JOB].args[0].phase is HeistPhase.VOTING
    assert NEXT_HEIST_TIME not in second.state.room_config("room")


def test_future_restart_rearms_same_time(make_service):
    first = make_service()
    first.controller_for("room")
    fire_at = first.scheduler.jobs[JOB].run_date

    scheduler = FakeScheduler()
    controller = make_service(scheduler=scheduler).controller_for("room")

    assert controller.phase is HeistPhase.IDLE
    assert scheduler.jobs[JOB].run_date == fire_at


def test_restart_during_voting_keeps_ballots(make_service, clock):
    first = make_service()
    _into_voting(first)
    first.cast_vote("room", "a", "alpha")
    first.cast_vote("room", "b", "bravo")
    clock.advance(20)

    scheduler = FakeScheduler()
    transport = RecordingTransport()
    second = make_service(scheduler=scheduler, transport=transport)
    controller = second.controller_for("room")

    assert controller.phase is HeistPhase.VOTING
    assert controller.status().votes == {"alpha": 1, "bravo": 1, "charlie": 0}
    assert scheduler.jobs[JOB].run_date == clock.now + timedelta(seconds=40)
    assert "40 more seconds" in transport.texts("room")[0]

    second.cast_vote("room", "c", "bravo")
    scheduler.fire(JOB)
    assert controller.phase is HeistPhase.IN_PROGRESS
    session = second.state.get_session(controller.status().session_id)
    assert session.crime_type == "bravo"
    assert session.participant_count == 3


def test_restart_with_expired_vote_window_uses_grace(make_service, clock):
    first = make_service()
    _into_voting(first)
    clock.advance(600)

    scheduler = FakeScheduler()
    make_service(scheduler=scheduler).controller_for("room")

    assert scheduler.jobs[JOB].run_date == clock.now + timedelta(seconds=30)


def test_restart_mid_distribution_finishes_payouts(make_service):
    first = make_service(rng=_winning_rng())
    controller = _into_voting(first)
    session_id = controller.status().session_id
    first.cast_vote("room", "a", "alpha")
    first.cast_vote("room", "b", "alpha")
    first.scheduler.fire(JOB)

    session = first.state.get_session(session_id)
    session.success = True
    session.total_payout = 60
    session.trust_delta = 2
    session.status = SessionStatus.DISTRIBUTING
    first.state.update_session(session)
    controller.config.set(HEIST_STATE, "DISTRIBUTING")

    second = make_service(scheduler=FakeScheduler())
    recovered = second.controller_for("room")

    assert recovered.phase is HeistPhase.COOLDOWN
    assert second.economy.balances() == {"a": 30, "b": 30}
    assert second.state.get_session(session_id).status is SessionStatus.COMPLETED


def test_restart_while_announcing_falls_back(make_service):
    first = make_service()
    controller = _into_voting(first)
    session_id = controller.status().session_id
    controller.config.set(HEIST_STATE, "ANNOUNCING")

    recovered = make_service(scheduler=FakeScheduler()).controller_for("room")

    assert recovered.phase is HeistPhase.COOLDOWN
    assert first.state.get_session(session_id).status is SessionStatus.FAILED


def test_store_failure_halts_room_until_recovered(make_service, monkeypatch):
    service = make_service()
    controller = service.controller_for("room")

    def broken(session):
        raise PersistenceError("disk full")

    with monkeypatch.context() as patch:
        patch.setattr(service.state, "update_session", broken)
        service.force_start("room", "boss")

        assert controller.halted is True
        assert JOB not in service.scheduler.jobs
        with pytest.raises(WrongPhaseError):
            service.force_advance("room", "boss")
        with pytest.raises(WrongPhaseError):
            service.cast_vote("room", "a", "alpha")

    status = controller.recover()

    assert status.halted is False
    assert status.state is HeistPhase.COOLDOWN


def test_store_failure_after_credit_does_not_pay_twice(make_service, monkeypatch):
    first = make_service(rng=_winning_rng())
    controller = _into_voting(first)
    session_id = controller.status().session_id
    first.cast_vote("room", "a", "alpha")
    first.scheduler.fire(JOB)
    original = first.state.mark_payout_credit
    failed = []

    def lose_funded_mark(session_id, username, status, error=None):
        if status == "funded" and not failed:
            failed.append(username)
            raise PersistenceError("database is locked")
        return original(session_id, username, status, error)

    monkeypatch.setattr(first.state, "mark_payout_credit", lose_funded_mark)
    first.scheduler.fire(JOB)

    assert controller.halted is True
    assert first.economy.balances() == {"a": 30}
    assert first.state.payout_credits(session_id)[0]["status"] == "crediting"

    second = make_service(scheduler=FakeScheduler())
    recovered = second.controller_for("room")

    assert recovered.phase is HeistPhase.COOLDOWN
    assert second.economy.balances() == {"a": 30}
    assert second.trust.get("a").heists_participated == 1
    assert second.state.payout_credits(session_id)[0]["status"] == "credited"


def test_admin_recover_resumes_a_halted_room(make_service, monkeypatch):
    service = make_service()
    controller = _into_voting(service)
    service.cast_vote("room", "a", "alpha")

    def broken(heist_id):
        raise PersistenceError("disk I/O error")

    with monkeypatch.context() as patch:
        patch.setattr(service.state, "participants", broken)
        service.scheduler.fire(JOB)

    assert controller.halted is True
    assert JOB not in service.scheduler.jobs
    assert "/heist_recover" in _format_status(service.get_status("room"))
    with pytest.raises(PermissionDeniedError):
        service.recover("room", "a")

    status = service.recover("room", "boss")

    assert status.halted is False
    assert status.state is HeistPhase.VOTING
    assert service.scheduler.jobs[JOB].args[0].phase is HeistPhase.VOTING
    service.cast_vote("room", "b", "bravo")
    assert service.get_status("room").votes == {"alpha": 1, "bravo": 1, "charlie": 0}


def test_recover_needs_a_halted_room(make_service):
    service = make_service()
    service.controller_for("room")

    with pytest.raises(WrongPhaseError):
        service.recover("room", "boss")


def test_phase_completions_are_timed(make_service, monkeypatch):
    service = make_service()
    controller = _into_voting(service)

    def broken(heist_id):
        raise PersistenceError("disk I/O error")

    monkeypatch.setattr(service.state, "participants", broken)
    service.scheduler.fire(JOB)

    assert controller.halted is True
    telemetry = get_telemetry()
    telemetry.flush()
    timings = telemetry.get_performance_summary()
    assert timings["phase:VOTING"]["count"] == 1
    assert "phase:IDLE" in timings
    assert telemetry.get_error_summary() == {"PersistenceError": 1}
