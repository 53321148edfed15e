"""Timer state machine: pure logic, no I/O.

Time is wall-clock epoch seconds, injected via `now` parameters so tests are
deterministic. Storage round-trips happen in the service; the machine only
records their outcome.

    idle --open--> running --begin_stop--> stopping --finish_stop--> idle
                      ^                        |
                      +-------abort_stop-------+
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import AlreadyRunningError, AlreadyStoppingError, NotRunningError, TimerError
from .nudges import NO_EFFECT, Nudge, NudgeEffect, NudgeThresholds, evaluate
from .session import SessionKind, TimerSession


class TimerPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class TickResult:
    elapsed_seconds: int = 0
    effect: NudgeEffect = NO_EFFECT
    phase: TimerPhase = TimerPhase.IDLE

    @property
    def nudges(self) -> tuple[Nudge, ...]:
        return self.effect.nudges

    def to_dict(self) -> dict:
        return {
            "elapsed_seconds": self.elapsed_seconds,
            "pending_effect": self.effect.action.value,
            "nudges": [n.value for n in self.effect.nudges],
            "phase": self.phase.value,
        }


def format_elapsed(seconds: int) -> str:
    """Format seconds as 'M:SS', minutes unbounded."""
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes}:{secs:02d}"


class TimerMachine:
    """Owns the single active session and its transition rules."""

    def __init__(self, thresholds: NudgeThresholds | None = None):
        self._phase: TimerPhase = TimerPhase.IDLE
        self._session: TimerSession | None = None
        self._thresholds = thresholds or NudgeThresholds()

    # ---- Read-only properties ----

    @property
    def phase(self) -> TimerPhase:
        return self._phase

    @property
    def session(self) -> TimerSession | None:
        return self._session

    @property
    def thresholds(self) -> NudgeThresholds:
        return self._thresholds

    @property
    def is_active(self) -> bool:
        return self._phase != TimerPhase.IDLE

    # ---- Transitions ----

    def open(self, project_id: str, kind: SessionKind, record_id: str, now: float) -> TimerSession:
        """Enter RUNNING with a fresh session anchored to an open record."""
        if self.is_active:
            raise AlreadyRunningError(self._session.project_id if self._session else None)
        if not project_id:
            raise TimerError("project_id is required to start a timer")
        if not record_id:
            raise TimerError("A persisted time log is required to start a timer")
        self._session = TimerSession(
            project_id=project_id,
            kind=SessionKind(kind),
            started_at=now,
            pending_record_id=record_id,
        )
        self._phase = TimerPhase.RUNNING
        return self._session

    def restore(self, session: TimerSession, now: float) -> TimerSession:
        """Resume a session rebuilt from an open record."""
        if self.is_active:
            raise AlreadyRunningError(self._session.project_id if self._session else None)
        session.refresh(now)
        self._session = session
        self._phase = TimerPhase.RUNNING
        return session

    def tick(self, now: float) -> TickResult:
        """Recompute elapsed time and run the nudge policy.

        While a stop is in flight only elapsed time is refreshed, so the policy
        cannot request a second stop.
        """
        if not self.is_active:
            raise NotRunningError("tick")
        session = self._session
        elapsed = session.refresh(now)
        if self._phase == TimerPhase.STOPPING:
            return TickResult(elapsed_seconds=elapsed, phase=self._phase)

        flags, effect = evaluate(
            session.kind,
            elapsed,
            session.nudge_flags,
            session.extended_mode,
            self._thresholds,
        )
        session.nudge_flags = flags
        return TickResult(elapsed_seconds=elapsed, effect=effect, phase=self._phase)

    def begin_stop(self, now: float) -> TimerSession:
        """RUNNING -> STOPPING. Only one reconciliation may be in flight."""
        if self._phase == TimerPhase.IDLE:
            raise NotRunningError("stop")
        if self._phase == TimerPhase.STOPPING:
            raise AlreadyStoppingError()
        self._session.refresh(now)
        self._phase = TimerPhase.STOPPING
        return self._session

    def abort_stop(self) -> None:
        """STOPPING -> RUNNING after a failed reconciliation. Session untouched."""
        if self._phase == TimerPhase.STOPPING:
            self._phase = TimerPhase.RUNNING

    def finish_stop(self) -> TimerSession:
        """STOPPING -> IDLE after a successful reconciliation."""
        if self._phase != TimerPhase.STOPPING:
            raise TimerError(f"Cannot finish a stop from phase '{self._phase.value}'")
        session = self._session
        self._session = None
        self._phase = TimerPhase.IDLE
        return session

    def extend(self) -> TimerSession:
        """Suppress the debugging cutoff for the rest of this session."""
        if not self.is_active:
            raise NotRunningError("continue debugging")
        if self._session.kind != SessionKind.DEBUGGING:
            raise TimerError("Extended mode only applies to debugging sessions")
        self._session.extended_mode = True
        return self._session

    # ---- Serialization ----

    def to_dict(self) -> dict:
        """Snapshot for the API. Elapsed is as of the last tick."""
        session = self._session
        if session is None:
            return {
                "phase": self._phase.value,
                "active": False,
                "project_id": None,
                "kind": None,
                "elapsed_seconds": 0,
                "display": format_elapsed(0),
                "pending_record_id": None,
                "nudge_flags": None,
                "extended_mode": False,
            }
        return {
            "phase": self._phase.value,
            "active": True,
            "project_id": session.project_id,
            "kind": session.kind.value,
            "started_at": session.started_at,
            "elapsed_seconds": session.elapsed_seconds,
            "display": format_elapsed(session.elapsed_seconds),
            "pending_record_id": session.pending_record_id,
            "nudge_flags": session.nudge_flags.to_dict(),
            "extended_mode": session.extended_mode,
        }
