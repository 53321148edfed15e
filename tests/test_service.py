"""TimerService tests: end-to-end timer scenarios against a temp SQLite store.

Time is driven by a FakeClock; the scheduler is not involved, run_tick is
called directly.
"""

import asyncio

import pytest

from conftest import T0, USER, run
from project_autopilot.errors import (
    AlreadyRunningError,
    AlreadyStoppingError,
    NotFoundError,
    NotRunningError,
    RecordMissingError,
    StopFailedError,
    StorageError,
    TimerError,
)
from project_autopilot.nudges import Nudge, NudgeThresholds
from project_autopilot.service import TimerService
from project_autopilot.timer import TimerPhase


# ---- Helpers ----

def make_service(store, clock, thresholds=None) -> TimerService:
    return TimerService(store, USER, thresholds, clock=clock)


def started(store, clock, project, kind="debugging") -> TimerService:
    service = make_service(store, clock)
    run(service.start_timer(project.id, kind))
    return service


def tick_at(service, clock, seconds):
    clock.now = T0 + seconds
    return run(service.run_tick())


# ---- Start ----

class TestStart:
    def test_start_opens_record(self, store, clock, project):
        service = started(store, clock, project, "building")
        session = service.machine.session
        assert service.machine.phase == TimerPhase.RUNNING
        assert session.started_at == T0
        record = run(store.get_time_log(session.pending_record_id))
        assert record.is_open
        assert record.kind.value == "building"

    def test_second_start_rejected(self, store, clock, project):
        service = started(store, clock, project)
        with pytest.raises(AlreadyRunningError):
            run(service.start_timer(project.id, "building"))
        assert len(run(store.list_time_logs(USER))) == 1

    def test_concurrent_start_rejected(self, store, clock, project):
        service = make_service(store, clock)

        async def scenario():
            first = asyncio.create_task(service.start_timer(project.id, "building"))
            await asyncio.sleep(0)
            with pytest.raises(AlreadyRunningError):
                await service.start_timer(project.id, "debugging")
            return await first

        session = run(scenario())
        assert session.kind.value == "building"
        assert len(run(store.list_time_logs(USER))) == 1

    def test_unknown_project(self, store, clock):
        service = make_service(store, clock)
        with pytest.raises(NotFoundError):
            run(service.start_timer("proj_missing", "building"))
        assert service.machine.phase == TimerPhase.IDLE

    def test_invalid_kind(self, store, clock, project):
        with pytest.raises(ValueError):
            run(make_service(store, clock).start_timer(project.id, "napping"))

    def test_storage_failure_stays_idle(self, flaky, clock, project):
        service = make_service(flaky, clock)
        flaky.fail_next("create_open_time_log")
        with pytest.raises(StorageError):
            run(service.start_timer(project.id, "building"))
        assert service.machine.phase == TimerPhase.IDLE

        run(service.start_timer(project.id, "building"))
        assert service.machine.phase == TimerPhase.RUNNING


# ---- Scenarios ----

class TestDebuggingCheckpointScenario:
    def test_checkpoint_then_stop(self, store, clock, project):
        service = started(store, clock, project)

        result = tick_at(service, clock, 3600)
        assert result.nudges == (Nudge.DEBUG_CHECKPOINT,)
        assert service.machine.session.nudge_flags.sixty_min_fired

        result = tick_at(service, clock, 3700)
        assert result.nudges == ()

        stopped = run(service.stop_timer())
        assert stopped.duration_minutes == pytest.approx(61.67, abs=0.01)
        assert service.machine.phase == TimerPhase.IDLE
        assert run(store.get_project(project.id)).debugging_hours == pytest.approx(3700 / 3600)


class TestDebuggingCutoffScenario:
    def test_forced_stop_at_ninety_minutes(self, store, clock, project):
        service = started(store, clock, project)
        tick_at(service, clock, 3600)
        record_id = service.machine.session.pending_record_id

        result = tick_at(service, clock, 5400)
        assert Nudge.DEBUG_CUTOFF in result.nudges
        assert result.phase == TimerPhase.IDLE
        assert service.machine.phase == TimerPhase.IDLE

        record = run(store.get_time_log(record_id))
        assert record.duration_minutes == pytest.approx(90.0)
        assert record.hours_applied
        assert run(store.get_project(project.id)).debugging_hours == pytest.approx(1.5)

    def test_late_tick_still_stops(self, store, clock, project):
        service = started(store, clock, project)
        result = tick_at(service, clock, 6000)
        assert result.nudges == (Nudge.DEBUG_CHECKPOINT, Nudge.DEBUG_CUTOFF)
        assert service.machine.phase == TimerPhase.IDLE

    def test_extended_mode_keeps_running(self, store, clock, project):
        service = started(store, clock, project)
        tick_at(service, clock, 3600)
        run(service.continue_extended_debugging())
        result = tick_at(service, clock, 9000)
        assert result.nudges == ()
        assert service.machine.phase == TimerPhase.RUNNING
        assert service.machine.session.elapsed_seconds == 9000

    def test_auto_stop_failure_keeps_session(self, flaky, clock, project):
        service = make_service(flaky, clock)
        run(service.start_timer(project.id, "debugging"))
        flaky.fail_next("close_time_log")

        result = tick_at(service, clock, 5400)
        assert result.phase == TimerPhase.RUNNING
        assert service.machine.session.nudge_flags.ninety_min_fired

        # No second automatic attempt; the user stops manually.
        assert tick_at(service, clock, 5460).nudges == ()
        assert service.machine.phase == TimerPhase.RUNNING
        stopped = run(service.stop_timer())
        assert stopped.duration_minutes == pytest.approx(91.0)


class TestBuildingBreakScenario:
    def test_break_is_not_terminal(self, store, clock, project):
        service = started(store, clock, project, "building")
        result = tick_at(service, clock, 7200)
        assert result.nudges == (Nudge.BUILDING_BREAK,)
        assert not result.effect.stops_timer

        result = tick_at(service, clock, 7260)
        assert result.nudges == ()
        assert service.machine.phase == TimerPhase.RUNNING
        assert service.machine.session.elapsed_seconds == 7260


# ---- Stop ----

class TestStop:
    def test_stop_idle(self, store, clock):
        with pytest.raises(NotRunningError):
            run(make_service(store, clock).stop_timer())

    def test_fractional_duration(self, store, clock, project):
        service = started(store, clock, project, "building")
        clock.advance(15)
        result = run(service.stop_timer())
        assert result.duration_minutes == pytest.approx(0.25)
        assert run(store.get_project(project.id)).building_hours == pytest.approx(0.25 / 60)

    def test_failure_then_retry_applies_once(self, flaky, store, clock, project):
        service = make_service(flaky, clock)
        run(service.start_timer(project.id, "building"))
        record_id = service.machine.session.pending_record_id

        clock.advance(600)
        flaky.fail_next("close_time_log")
        with pytest.raises(StopFailedError) as exc:
            run(service.stop_timer())
        assert "NOT lost" in str(exc.value)
        assert exc.value.elapsed_seconds == 600
        assert service.machine.phase == TimerPhase.RUNNING
        assert service.machine.session.pending_record_id == record_id

        clock.advance(60)
        result = run(service.stop_timer())
        assert result.duration_minutes == pytest.approx(11.0)
        assert service.machine.phase == TimerPhase.IDLE
        assert run(store.get_project(project.id)).building_hours == pytest.approx(11 / 60)
        assert run(store.get_time_log(record_id)).hours_applied

    def test_repeated_failures_keep_elapsed(self, flaky, clock, project):
        service = make_service(flaky, clock)
        run(service.start_timer(project.id, "building"))
        flaky.fail_next("close_time_log", times=3)
        for _ in range(3):
            clock.advance(100)
            with pytest.raises(StopFailedError):
                run(service.stop_timer())
        assert service.snapshot()["elapsed_seconds"] == 300

    def test_concurrent_stop_rejected(self, flaky, clock, project):
        service = make_service(flaky, clock)
        run(service.start_timer(project.id, "building"))
        clock.advance(120)

        async def scenario():
            flaky.gate = asyncio.Event()
            first = asyncio.create_task(service.stop_timer())
            await asyncio.sleep(0)
            assert service.machine.phase == TimerPhase.STOPPING
            with pytest.raises(AlreadyStoppingError):
                await service.stop_timer()
            flaky.gate.set()
            return await first

        result = run(scenario())
        assert result.duration_minutes == pytest.approx(2.0)
        assert flaky.calls["close_time_log"] == 1
        assert service.machine.phase == TimerPhase.IDLE

    def test_hours_failure_still_stops(self, flaky, store, clock, project):
        service = make_service(flaky, clock)
        run(service.start_timer(project.id, "debugging"))
        clock.advance(1800)
        flaky.fail_next("add_project_hours")

        result = run(service.stop_timer())
        assert not result.hours_applied
        assert service.machine.phase == TimerPhase.IDLE

        repaired = run(service.repair_hours())
        assert len(repaired) == 1
        assert run(store.get_project(project.id)).debugging_hours == pytest.approx(0.5)

    def test_missing_record_discards_session(self, store, clock, project):
        service = started(store, clock, project, "building")
        clock.advance(300)
        run(store.clear_all_data(USER))

        with pytest.raises(RecordMissingError) as exc:
            run(service.stop_timer())
        assert "no longer exists" in str(exc.value)
        assert "try stopping again" not in str(exc.value)
        assert service.machine.phase == TimerPhase.IDLE

    def test_missing_record_on_auto_stop(self, store, clock, project):
        service = started(store, clock, project)
        run(store.clear_all_data(USER))
        result = tick_at(service, clock, 5400)
        assert result.phase == TimerPhase.IDLE
        assert service.machine.phase == TimerPhase.IDLE

    def test_learning_session(self, store, clock, project):
        service = started(store, clock, project, "learning")
        clock.advance(1200)
        result = run(service.stop_timer())
        assert result.duration_minutes == pytest.approx(20.0)
        assert run(store.get_project(project.id)).total_hours == 0


# ---- Tick ----

class TestTick:
    def test_tick_idle_rejected(self, store, clock):
        with pytest.raises(NotRunningError):
            make_service(store, clock).tick()

    def test_run_tick_idle_is_noop(self, store, clock):
        assert run(make_service(store, clock).run_tick()) is None

    def test_custom_thresholds(self, store, clock, project):
        thresholds = NudgeThresholds(debug_checkpoint=6, debug_cutoff=9, building_break=12)
        service = make_service(store, clock, thresholds)
        run(service.start_timer(project.id, "debugging"))
        assert tick_at(service, clock, 6).nudges == (Nudge.DEBUG_CHECKPOINT,)
        tick_at(service, clock, 9)
        assert service.machine.phase == TimerPhase.IDLE


# ---- Session actions ----

class TestExtend:
    def test_building_rejected(self, store, clock, project):
        service = started(store, clock, project, "building")
        with pytest.raises(TimerError):
            run(service.continue_extended_debugging())

    def test_idle_rejected(self, store, clock):
        with pytest.raises(NotRunningError):
            run(make_service(store, clock).continue_extended_debugging())


class TestCheckpointLog:
    def test_logs_attempts_and_time(self, store, clock, project):
        service = started(store, clock, project)
        clock.advance(3600)
        log = run(service.log_debug_checkpoint("cleared cache\n- reinstalled deps\n\n", "stale lockfile"))
        assert [a.attempt for a in log.attempts] == ["cleared cache", "reinstalled deps"]
        assert log.time_spent_minutes == pytest.approx(60.0)
        assert run(store.list_debug_logs(USER))[0].id == log.id

    def test_requires_debugging(self, store, clock, project):
        service = started(store, clock, project, "building")
        with pytest.raises(TimerError):
            run(service.log_debug_checkpoint(["x"]))

    def test_requires_session(self, store, clock):
        with pytest.raises(NotRunningError):
            run(make_service(store, clock).log_debug_checkpoint(["x"]))


class TestResume:
    def test_resume_after_restart(self, store, clock, project):
        first = started(store, clock, project, "building")
        record_id = first.machine.session.pending_record_id

        clock.advance(125)
        second = make_service(store, clock)
        session = run(second.resume_open_session())
        assert session.pending_record_id == record_id
        assert session.elapsed_seconds == 125

        clock.advance(5)
        result = run(second.stop_timer())
        assert result.duration_minutes == pytest.approx(130 / 60)

    def test_nothing_to_resume(self, store, clock):
        assert run(make_service(store, clock).resume_open_session()) is None

    def test_checkpoint_not_repeated_after_restart(self, store, clock, project):
        first = started(store, clock, project)
        assert tick_at(first, clock, 3600).nudges == (Nudge.DEBUG_CHECKPOINT,)

        second = make_service(store, clock)
        session = run(second.resume_open_session())
        assert session.nudge_flags.sixty_min_fired
        assert tick_at(second, clock, 3700).nudges == ()

    def test_extension_survives_restart(self, store, clock, project):
        first = started(store, clock, project)
        tick_at(first, clock, 3600)
        run(first.continue_extended_debugging())

        second = make_service(store, clock)
        session = run(second.resume_open_session())
        assert session.extended_mode

        result = tick_at(second, clock, 6000)
        assert result.nudges == ()
        assert not result.effect.stops_timer
        assert second.machine.phase == TimerPhase.RUNNING

    def test_building_break_not_repeated_after_restart(self, store, clock, project):
        first = started(store, clock, project, "building")
        tick_at(first, clock, 7200)

        second = make_service(store, clock)
        run(second.resume_open_session())
        assert tick_at(second, clock, 7300).nudges == ()

    def test_state_save_failure_keeps_running(self, flaky, clock, project):
        service = make_service(flaky, clock)
        run(service.start_timer(project.id, "debugging"))
        flaky.fail_next("save_session_state")
        result = tick_at(service, clock, 3600)
        assert result.nudges == (Nudge.DEBUG_CHECKPOINT,)
        assert service.machine.phase == TimerPhase.RUNNING
        assert service.machine.session.nudge_flags.sixty_min_fired


# ---- Notifications ----

class TestListeners:
    def test_listener_receives_notice(self, store, clock, project):
        service = started(store, clock, project)
        notices = []
        service.add_listener(notices.append)
        tick_at(service, clock, 3600)
        assert [n.nudge for n in notices] == [Nudge.DEBUG_CHECKPOINT]
        assert notices[0].project_id == project.id
        assert not notices[0].stops_timer
        assert service.recent_nudges[-1].to_dict()["nudge"] == "debug_checkpoint"

    def test_failing_listener_does_not_break_tick(self, store, clock, project):
        service = started(store, clock, project, "building")

        def boom(notice):
            raise RuntimeError("display closed")

        service.add_listener(boom)
        result = tick_at(service, clock, 7200)
        assert result.nudges == (Nudge.BUILDING_BREAK,)
        assert len(service.recent_nudges) == 1


class TestSnapshot:
    def test_snapshot_refreshes_elapsed(self, store, clock, project):
        service = started(store, clock, project, "building")
        clock.advance(65)
        data = service.snapshot()
        assert data["elapsed_seconds"] == 65
        assert data["display"] == "1:05"
        assert data["project_id"] == project.id
