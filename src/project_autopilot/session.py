"""Session data types for the active timer."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum


class SessionKind(str, Enum):
    BUILDING = "building"
    DEBUGGING = "debugging"
    LEARNING = "learning"

    @property
    def hours_field(self) -> str | None:
        """Project column credited when a session of this kind closes."""
        if self == SessionKind.BUILDING:
            return "building_hours"
        if self == SessionKind.DEBUGGING:
            return "debugging_hours"
        return None


@dataclass(frozen=True)
class NudgeFlags:
    sixty_min_fired: bool = False
    ninety_min_fired: bool = False
    one_twenty_min_fired: bool = False

    def to_dict(self) -> dict:
        return {
            "sixty_min_fired": self.sixty_min_fired,
            "ninety_min_fired": self.ninety_min_fired,
            "one_twenty_min_fired": self.one_twenty_min_fired,
        }


def elapsed_between(started_at: float, now: float) -> int:
    """Whole seconds from started_at to now, never negative."""
    return max(0, math.floor(now - started_at))


@dataclass
class TimerSession:
    """The in-progress interval. started_at is wall-clock epoch seconds."""

    project_id: str
    kind: SessionKind
    started_at: float
    pending_record_id: str
    elapsed_seconds: int = 0
    nudge_flags: NudgeFlags = field(default_factory=NudgeFlags)
    extended_mode: bool = False

    def refresh(self, now: float) -> int:
        # Derived from the wall clock every time; tick count never matters.
        self.elapsed_seconds = elapsed_between(self.started_at, now)
        return self.elapsed_seconds

    @property
    def elapsed_minutes(self) -> float:
        return self.elapsed_seconds / 60

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "kind": self.kind.value,
            "started_at": self.started_at,
            "pending_record_id": self.pending_record_id,
            "elapsed_seconds": self.elapsed_seconds,
            "nudge_flags": self.nudge_flags.to_dict(),
            "extended_mode": self.extended_mode,
        }
