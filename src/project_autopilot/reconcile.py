"""Stop-timer reconciliation: close the time log, then credit the project.

Two best-effort steps, not a transaction. Closing the record is the step that
must succeed; crediting hours is recorded on the record itself so a retried
stop never adds the same session twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .errors import NotFoundError, StorageError
from .models import Project, TimeLog, epoch_to_iso
from .session import TimerSession, elapsed_between
from .store import TimerStore

logger = logging.getLogger("project_autopilot.reconcile")


@dataclass
class ReconcileResult:
    record: TimeLog
    elapsed_seconds: int
    hours_added: float = 0.0
    hours_applied: bool = False
    project: Optional[Project] = None

    @property
    def duration_minutes(self) -> float:
        return self.record.duration_minutes or 0.0

    def to_dict(self) -> dict:
        return {
            "time_log": self.record.model_dump(mode="json"),
            "elapsed_seconds": self.elapsed_seconds,
            "duration_minutes": self.duration_minutes,
            "hours_added": self.hours_added,
            "hours_applied": self.hours_applied,
            "project": self.project.model_dump(mode="json") if self.project else None,
        }


async def reconcile_stop(store: TimerStore, session: TimerSession, now: float) -> ReconcileResult:
    """Close `session`'s record and apply its duration to the project.

    Raises StorageError (or NotFoundError) when the record cannot be closed;
    nothing is mutated in that case and the caller may retry. A failure while
    crediting hours is logged and reported via `hours_applied=False`.
    """
    elapsed = elapsed_between(session.started_at, now)
    session.elapsed_seconds = elapsed
    elapsed_minutes = elapsed / 60

    record = await store.close_time_log(
        session.pending_record_id,
        ended_at=epoch_to_iso(now),
        duration_minutes=elapsed_minutes,
    )
    logger.info(
        f"Closed {record.id}: {session.kind.value} on {session.project_id}, "
        f"{record.duration_minutes:.2f} min"
    )

    result = ReconcileResult(record=record, elapsed_seconds=elapsed)
    if session.kind.hours_field is None:
        # Learning time lives on the record only
        return result
    if record.hours_applied:
        logger.info(f"Hours for {record.id} were applied by an earlier attempt")
        result.hours_applied = True
        return result

    await _apply_hours(store, record, result)
    return result


async def _apply_hours(store: TimerStore, record: TimeLog, result: ReconcileResult) -> None:
    hours = (record.duration_minutes or 0.0) / 60
    try:
        project = await store.get_project(record.project_id)
        if project is None:
            raise NotFoundError("Project", record.project_id)
        result.project = await store.add_project_hours(
            record.project_id, record.kind, hours, source_record_id=record.id
        )
    except StorageError as e:
        # Record stays closed and recoverable; project total under-counts until repaired.
        logger.warning(
            f"Time log {record.id} closed but {hours:.4f}h not added to {record.project_id}: {e}"
        )
        return
    result.hours_added = hours
    result.hours_applied = True


async def repair_unapplied_hours(store: TimerStore, user_id: str) -> List[ReconcileResult]:
    """Credit projects for closed records whose hours step failed earlier."""
    repaired = []
    for record in await store.list_unapplied_time_logs(user_id):
        result = ReconcileResult(
            record=record,
            elapsed_seconds=round((record.duration_minutes or 0.0) * 60),
        )
        await _apply_hours(store, record, result)
        if result.hours_applied:
            repaired.append(result)
    if repaired:
        logger.info(f"Repaired hours for {len(repaired)} time logs")
    return repaired
