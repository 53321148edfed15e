"""Unit tests for the nudge policy: pure function, no I/O."""

import pytest

from project_autopilot.nudges import (
    BUILDING_BREAK_SECONDS,
    DEBUG_CHECKPOINT_SECONDS,
    DEBUG_CUTOFF_SECONDS,
    NO_EFFECT,
    Nudge,
    NudgeAction,
    NudgeThresholds,
    evaluate,
    threshold_for,
)
from project_autopilot.session import NudgeFlags, SessionKind


# ---- Helpers ----

def sweep(kind: SessionKind, until: int, step: int, extended: bool = False, thresholds=None) -> list[Nudge]:
    """Evaluate every `step` seconds up to `until`, collecting fired nudges."""
    flags = NudgeFlags()
    fired = []
    for elapsed in range(0, until + 1, step):
        flags, effect = evaluate(kind, elapsed, flags, extended, thresholds)
        fired.extend(effect.nudges)
    return fired


# ---- Defaults ----

class TestThresholds:
    def test_default_values(self):
        assert DEBUG_CHECKPOINT_SECONDS == 3600
        assert DEBUG_CUTOFF_SECONDS == 5400
        assert BUILDING_BREAK_SECONDS == 7200

    def test_threshold_for(self):
        assert threshold_for(Nudge.DEBUG_CHECKPOINT) == 3600
        assert threshold_for(Nudge.DEBUG_CUTOFF) == 5400
        assert threshold_for(Nudge.BUILDING_BREAK) == 7200

    def test_custom_thresholds(self):
        t = NudgeThresholds(debug_checkpoint=60, debug_cutoff=90, building_break=120)
        assert threshold_for(Nudge.DEBUG_CUTOFF, t) == 90

    def test_non_positive_rejected(self):
        with pytest.raises(ValueError):
            NudgeThresholds(debug_checkpoint=0)


# ---- Debugging ----

class TestDebugging:
    def test_nothing_before_checkpoint(self):
        flags, effect = evaluate(SessionKind.DEBUGGING, 3599, NudgeFlags())
        assert effect == NO_EFFECT
        assert flags == NudgeFlags()

    def test_checkpoint_at_exact_boundary(self):
        flags, effect = evaluate(SessionKind.DEBUGGING, 3600, NudgeFlags())
        assert effect.action == NudgeAction.NOTIFY
        assert effect.nudges == (Nudge.DEBUG_CHECKPOINT,)
        assert flags.sixty_min_fired
        assert not flags.ninety_min_fired

    def test_checkpoint_fires_once(self):
        flags, _ = evaluate(SessionKind.DEBUGGING, 3600, NudgeFlags())
        flags2, effect = evaluate(SessionKind.DEBUGGING, 3700, flags)
        assert effect == NO_EFFECT
        assert flags2 is flags

    def test_cutoff_stops(self):
        flags = NudgeFlags(sixty_min_fired=True)
        flags, effect = evaluate(SessionKind.DEBUGGING, 5400, flags)
        assert effect.action == NudgeAction.NOTIFY_AND_STOP
        assert effect.stops_timer
        assert effect.nudges == (Nudge.DEBUG_CUTOFF,)
        assert flags.ninety_min_fired

    def test_late_tick_fires_missed_threshold(self):
        """A throttled tick that lands past the boundary still fires."""
        _, effect = evaluate(SessionKind.DEBUGGING, 3650, NudgeFlags())
        assert effect.nudges == (Nudge.DEBUG_CHECKPOINT,)

    def test_jump_past_both_thresholds(self):
        flags, effect = evaluate(SessionKind.DEBUGGING, 6000, NudgeFlags())
        assert effect.nudges == (Nudge.DEBUG_CHECKPOINT, Nudge.DEBUG_CUTOFF)
        assert effect.action == NudgeAction.NOTIFY_AND_STOP
        assert flags.sixty_min_fired and flags.ninety_min_fired

    def test_extended_mode_suppresses_cutoff(self):
        flags = NudgeFlags(sixty_min_fired=True)
        new_flags, effect = evaluate(SessionKind.DEBUGGING, 10_000, flags, extended_mode=True)
        assert effect == NO_EFFECT
        assert not new_flags.ninety_min_fired

    def test_extended_mode_keeps_checkpoint(self):
        _, effect = evaluate(SessionKind.DEBUGGING, 3600, NudgeFlags(), extended_mode=True)
        assert effect.nudges == (Nudge.DEBUG_CHECKPOINT,)
        assert not effect.stops_timer

    def test_silent_once_all_flags_fired(self):
        _, effect = evaluate(SessionKind.DEBUGGING, 8000, NudgeFlags(sixty_min_fired=True, ninety_min_fired=True))
        assert effect == NO_EFFECT


# ---- Building / Learning ----

class TestBuilding:
    def test_break_at_two_hours(self):
        flags, effect = evaluate(SessionKind.BUILDING, 7200, NudgeFlags())
        assert effect.nudges == (Nudge.BUILDING_BREAK,)
        assert effect.action == NudgeAction.NOTIFY
        assert not effect.stops_timer
        assert flags.one_twenty_min_fired

    def test_no_debug_nudges_while_building(self):
        _, effect = evaluate(SessionKind.BUILDING, 5400, NudgeFlags())
        assert effect == NO_EFFECT

    def test_break_fires_once(self):
        flags, _ = evaluate(SessionKind.BUILDING, 7200, NudgeFlags())
        _, effect = evaluate(SessionKind.BUILDING, 7260, flags)
        assert effect == NO_EFFECT


class TestLearning:
    def test_learning_never_nudged(self):
        assert sweep(SessionKind.LEARNING, 20_000, 100) == []


# ---- At-most-once under any tick granularity ----

class TestTickGranularity:
    @pytest.mark.parametrize("step", [1, 7, 60, 599, 3601])
    def test_debugging_each_nudge_once(self, step):
        fired = sweep(SessionKind.DEBUGGING, 12_000, step)
        assert fired.count(Nudge.DEBUG_CHECKPOINT) == 1
        assert fired.count(Nudge.DEBUG_CUTOFF) == 1

    @pytest.mark.parametrize("step", [1, 13, 1800, 7300])
    def test_building_break_once(self, step):
        fired = sweep(SessionKind.BUILDING, 15_000, step)
        assert fired == [Nudge.BUILDING_BREAK]

    def test_extended_debugging_never_cuts_off(self):
        fired = sweep(SessionKind.DEBUGGING, 12_000, 60, extended=True)
        assert fired == [Nudge.DEBUG_CHECKPOINT]

    def test_shrunk_thresholds(self):
        t = NudgeThresholds(debug_checkpoint=6, debug_cutoff=9, building_break=12)
        assert sweep(SessionKind.DEBUGGING, 30, 1, thresholds=t) == [
            Nudge.DEBUG_CHECKPOINT,
            Nudge.DEBUG_CUTOFF,
        ]
