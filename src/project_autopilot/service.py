"""
Timer service: the operations the UI/API calls.

Owns one TimerMachine and a store. Ticks are synchronous; start and stop await
the store. Callers receive this object explicitly (FastAPI app.state, CLI),
there is no module-level timer.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Union

from .errors import (
    AlreadyRunningError,
    NotFoundError,
    NotRunningError,
    RecordMissingError,
    StopFailedError,
    StorageError,
    TimerError,
)
from .models import DebugLog, epoch_to_iso, iso_to_epoch, now_iso
from .nudges import NUDGE_MESSAGES, Nudge, NudgeThresholds
from .reconcile import ReconcileResult, reconcile_stop, repair_unapplied_hours
from .session import SessionKind, TimerSession
from .store import TimerStore
from .timer import TickResult, TimerMachine, TimerPhase

logger = logging.getLogger("project_autopilot.service")


@dataclass
class NudgeNotice:
    nudge: Nudge
    kind: SessionKind
    project_id: str
    elapsed_seconds: int
    message: str
    stops_timer: bool
    fired_at: str

    def to_dict(self) -> dict:
        return {
            "nudge": self.nudge.value,
            "kind": self.kind.value,
            "project_id": self.project_id,
            "elapsed_seconds": self.elapsed_seconds,
            "message": self.message,
            "stops_timer": self.stops_timer,
            "fired_at": self.fired_at,
        }


NudgeListener = Callable[[NudgeNotice], None]


class TimerService:
    def __init__(
        self,
        store: TimerStore,
        user_id: str,
        thresholds: Optional[NudgeThresholds] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.user_id = user_id
        self.machine = TimerMachine(thresholds)
        self._clock = clock
        self._starting = False
        self._listeners: List[NudgeListener] = []
        self.recent_nudges: Deque[NudgeNotice] = deque(maxlen=50)

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    # ---- Start ----

    async def start_timer(
        self, project_id: str, kind: Union[SessionKind, str], now: Optional[float] = None
    ) -> TimerSession:
        """Open a session backed by a freshly created open time log.

        Raises AlreadyRunningError while a session is active (or another start
        is still waiting on storage), NotFoundError for an unknown project and
        StorageError when the record cannot be created. The machine stays idle
        on any failure.
        """
        kind = SessionKind(kind)
        if self.machine.is_active or self._starting:
            active = self.machine.session.project_id if self.machine.session else None
            raise AlreadyRunningError(active)

        self._starting = True
        try:
            project = await self.store.get_project(project_id)
            if project is None:
                raise NotFoundError("Project", project_id)
            started = self._now(now)
            record = await self.store.create_open_time_log(
                project_id, self.user_id, kind, epoch_to_iso(started)
            )
        except StorageError as e:
            logger.error(f"Could not start {kind.value} timer on {project_id}: {e}")
            raise
        finally:
            self._starting = False

        session = self.machine.open(project_id, kind, record.id, started)
        logger.info(f"Started {kind.value} timer on {project_id} (record {record.id})")
        return session

    async def resume_open_session(self, now: Optional[float] = None) -> Optional[TimerSession]:
        """Restore the running session from an open record left by a restart."""
        if self.machine.is_active:
            return None
        record = await self.store.get_open_time_log(self.user_id)
        if record is None:
            return None
        session = TimerSession(
            project_id=record.project_id,
            kind=record.kind,
            started_at=iso_to_epoch(record.started_at),
            pending_record_id=record.id,
            nudge_flags=record.nudge_flags,
            extended_mode=record.extended_mode,
        )
        self.machine.restore(session, self._now(now))
        logger.info(
            f"Resumed {session.kind.value} timer on {session.project_id} "
            f"at {session.elapsed_seconds}s (record {record.id})"
        )
        return session

    # ---- Tick ----

    def tick(self, now: Optional[float] = None) -> TickResult:
        """Advance elapsed time and publish any nudges. Never awaits."""
        result = self.machine.tick(self._now(now))
        if result.nudges:
            self._publish(result)
        return result

    async def run_tick(self, now: Optional[float] = None) -> Optional[TickResult]:
        """Scheduler entry point: tick, and carry out a policy-requested stop."""
        if not self.machine.is_active:
            return None
        now = self._now(now)
        result = self.tick(now)
        if result.effect.stops_timer:
            logger.info(f"Debugging cutoff reached at {result.elapsed_seconds}s, stopping timer")
            try:
                await self.stop_timer(now, auto=True)
            except StopFailedError as e:
                # Same recovery as a manual stop: session kept, user retries.
                logger.error(f"Automatic stop failed: {e}")
            except RecordMissingError as e:
                logger.error(f"Automatic stop discarded the session: {e}")
            result.phase = self.machine.phase
        if result.nudges and self.machine.phase == TimerPhase.RUNNING:
            await self._save_state()
        return result

    # ---- Stop ----

    async def stop_timer(self, now: Optional[float] = None, auto: bool = False) -> ReconcileResult:
        """Reconcile the active session and return to idle.

        Raises NotRunningError when idle, AlreadyStoppingError while another
        stop is in flight and StopFailedError when storage fails; in the last
        case the session keeps running and the call can be retried. If the
        record itself has been deleted the session is discarded and
        RecordMissingError is raised.
        """
        now = self._now(now)
        session = self.machine.begin_stop(now)
        source = "auto" if auto else "manual"
        try:
            result = await reconcile_stop(self.store, session, now)
        except NotFoundError as e:
            # The record is gone, so no retry can close it.
            self.machine.finish_stop()
            logger.error(
                f"Time log {session.pending_record_id} missing on {source} stop, "
                f"discarded {session.elapsed_seconds}s session: {e}"
            )
            raise RecordMissingError(session.pending_record_id, session.elapsed_seconds) from e
        except StorageError as e:
            self.machine.abort_stop()
            logger.error(
                f"{source.capitalize()} stop failed for record {session.pending_record_id} "
                f"after {session.elapsed_seconds}s, session kept: {e}"
            )
            raise StopFailedError(session.elapsed_seconds, e) from e
        except BaseException:
            self.machine.abort_stop()
            raise

        self.machine.finish_stop()
        logger.info(
            f"Stopped {session.kind.value} timer on {session.project_id} ({source}): "
            f"{result.duration_minutes:.2f} min"
        )
        return result

    async def repair_hours(self) -> List[ReconcileResult]:
        return await repair_unapplied_hours(self.store, self.user_id)

    # ---- Session actions ----

    async def continue_extended_debugging(self) -> TimerSession:
        session = self.machine.extend()
        logger.info(f"Extended debugging on {session.project_id} at {session.elapsed_seconds}s")
        await self._save_state()
        return session

    async def _save_state(self) -> None:
        """Write fired nudges and extended mode to the open record."""
        session = self.machine.session
        if session is None:
            return
        try:
            await self.store.save_session_state(
                session.pending_record_id, session.nudge_flags, session.extended_mode
            )
        except StorageError as e:
            # In-memory state still applies; only a restart would lose it.
            logger.warning(f"Could not save session state for {session.pending_record_id}: {e}")

    async def log_debug_checkpoint(
        self,
        attempts: Union[List[str], str, None],
        hypothesis: Optional[str] = None,
        now: Optional[float] = None,
    ) -> DebugLog:
        """Record attempts and a hypothesis for the active debugging session."""
        session = self.machine.session
        if session is None:
            raise NotRunningError("log a debugging checkpoint")
        if session.kind != SessionKind.DEBUGGING:
            raise TimerError("Checkpoints are only logged for debugging sessions")
        session.refresh(self._now(now))
        if isinstance(attempts, str):
            attempts = [line.strip(" -*\t") for line in attempts.splitlines()]
        return await self.store.create_debug_log(
            project_id=session.project_id,
            user_id=self.user_id,
            attempts=[a for a in (attempts or []) if a],
            hypothesis=hypothesis,
            time_spent_minutes=session.elapsed_minutes,
        )

    # ---- Notifications ----

    def add_listener(self, listener: NudgeListener) -> None:
        self._listeners.append(listener)

    def _publish(self, result: TickResult) -> None:
        session = self.machine.session
        for nudge in result.nudges:
            notice = NudgeNotice(
                nudge=nudge,
                kind=session.kind,
                project_id=session.project_id,
                elapsed_seconds=result.elapsed_seconds,
                message=NUDGE_MESSAGES[nudge],
                stops_timer=nudge == Nudge.DEBUG_CUTOFF,
                fired_at=now_iso(),
            )
            self.recent_nudges.append(notice)
            logger.info(f"Nudge {nudge.value} on {session.project_id} at {result.elapsed_seconds}s")
            for listener in self._listeners:
                try:
                    listener(notice)
                except Exception:
                    logger.exception(f"Nudge listener failed for {nudge.value}")

    # ---- Snapshot ----

    def snapshot(self, now: Optional[float] = None) -> dict:
        session = self.machine.session
        if session is not None:
            session.refresh(self._now(now))
        return self.machine.to_dict()
