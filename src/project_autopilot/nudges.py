"""Threshold nudge policy: pure logic, no I/O.

Given a session kind, its elapsed seconds and the flags already fired, decide
which one-shot nudges fire now and whether the timer must stop. Thresholds are
injected so demos and tests can shrink them without changing the policy shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from .session import NudgeFlags, SessionKind


class NudgeAction(str, Enum):
    NONE = "none"
    NOTIFY = "notify"
    NOTIFY_AND_STOP = "notify_and_stop"


class Nudge(str, Enum):
    DEBUG_CHECKPOINT = "debug_checkpoint"
    DEBUG_CUTOFF = "debug_cutoff"
    BUILDING_BREAK = "building_break"


# Stronger actions win when one tick crosses several thresholds.
_ACTION_RANK = {
    NudgeAction.NONE: 0,
    NudgeAction.NOTIFY: 1,
    NudgeAction.NOTIFY_AND_STOP: 2,
}

NUDGE_MESSAGES: dict[Nudge, str] = {
    Nudge.DEBUG_CHECKPOINT: (
        "You've been debugging for an hour. Log what you've tried and your current "
        "hypothesis, or ask for help."
    ),
    Nudge.DEBUG_CUTOFF: "90-minute limit reached. Debug session automatically stopped.",
    Nudge.BUILDING_BREAK: "You've been building for 2 hours. Consider taking a short break.",
}

DEBUG_CHECKPOINT_SECONDS = 60 * 60
DEBUG_CUTOFF_SECONDS = 90 * 60
BUILDING_BREAK_SECONDS = 120 * 60


@dataclass(frozen=True)
class NudgeThresholds:
    debug_checkpoint: int = DEBUG_CHECKPOINT_SECONDS
    debug_cutoff: int = DEBUG_CUTOFF_SECONDS
    building_break: int = BUILDING_BREAK_SECONDS

    def __post_init__(self):
        for name in ("debug_checkpoint", "debug_cutoff", "building_break"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Threshold {name} must be positive")


@dataclass(frozen=True)
class NudgeEffect:
    action: NudgeAction = NudgeAction.NONE
    nudges: tuple[Nudge, ...] = field(default_factory=tuple)

    @property
    def stops_timer(self) -> bool:
        return self.action == NudgeAction.NOTIFY_AND_STOP


NO_EFFECT = NudgeEffect()


@dataclass(frozen=True)
class _Rule:
    kind: SessionKind
    nudge: Nudge
    flag: str
    threshold_attr: str
    action: NudgeAction


# Evaluated in order, so a single jump past both debugging thresholds
# reports the checkpoint before the cutoff.
RULES: tuple[_Rule, ...] = (
    _Rule(SessionKind.DEBUGGING, Nudge.DEBUG_CHECKPOINT, "sixty_min_fired",
          "debug_checkpoint", NudgeAction.NOTIFY),
    _Rule(SessionKind.DEBUGGING, Nudge.DEBUG_CUTOFF, "ninety_min_fired",
          "debug_cutoff", NudgeAction.NOTIFY_AND_STOP),
    _Rule(SessionKind.BUILDING, Nudge.BUILDING_BREAK, "one_twenty_min_fired",
          "building_break", NudgeAction.NOTIFY),
)


def evaluate(
    kind: SessionKind,
    elapsed_seconds: int,
    flags: NudgeFlags,
    extended_mode: bool = False,
    thresholds: NudgeThresholds | None = None,
) -> tuple[NudgeFlags, NudgeEffect]:
    """Return the updated flags and the effect for this observation.

    Uses >= so a throttled or missed tick still fires on the next tick that
    sees the boundary. A set flag never fires again, so calling this twice
    with the same inputs yields NO_EFFECT the second time.
    """
    thresholds = thresholds or NudgeThresholds()
    new_flags = flags
    action = NudgeAction.NONE
    fired: list[Nudge] = []

    for rule in RULES:
        if rule.kind != kind or getattr(new_flags, rule.flag):
            continue
        if elapsed_seconds < getattr(thresholds, rule.threshold_attr):
            continue
        if rule.nudge == Nudge.DEBUG_CUTOFF and extended_mode:
            # Opted out for the rest of this session.
            continue
        new_flags = replace(new_flags, **{rule.flag: True})
        fired.append(rule.nudge)
        if _ACTION_RANK[rule.action] > _ACTION_RANK[action]:
            action = rule.action

    if not fired:
        return flags, NO_EFFECT
    return new_flags, NudgeEffect(action=action, nudges=tuple(fired))


def threshold_for(nudge: Nudge, thresholds: NudgeThresholds | None = None) -> int:
    """Seconds at which the given nudge fires."""
    thresholds = thresholds or NudgeThresholds()
    for rule in RULES:
        if rule.nudge == nudge:
            return getattr(thresholds, rule.threshold_attr)
    raise KeyError(nudge)
