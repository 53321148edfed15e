"""Dashboard aggregates computed from projects and debug logs."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .models import DebugLog, Project

# Share of tracked time above which debugging is flagged
DEBUGGING_WARNING_RATIO = 0.6


@dataclass
class Analytics:
    total_hours: float
    building_hours: float
    debugging_hours: float
    building_ratio: int
    debugging_ratio: int
    completion_rate: int
    avg_debug_time: float
    active_projects: int
    completed_this_month: int
    learning_hours: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Insight:
    project_id: str
    title: str
    description: str
    action: str
    type: str = "warning"

    def to_dict(self) -> dict:
        return asdict(self)


def _percent(part: float, whole: float) -> int:
    return round(part / whole * 100) if whole > 0 else 0


def _completed_in_month(project: Project, now: datetime) -> bool:
    if not project.completed_at:
        return False
    completed = datetime.fromisoformat(project.completed_at)
    if completed.tzinfo is None:
        completed = completed.replace(tzinfo=timezone.utc)
    completed = completed.astimezone(now.tzinfo)
    return completed.year == now.year and completed.month == now.month


def compute_analytics(
    projects: Iterable[Project],
    debug_logs: Iterable[DebugLog] = (),
    learning_minutes: float = 0.0,
    now: Optional[datetime] = None,
) -> Analytics:
    projects = list(projects)
    now = now or datetime.now(timezone.utc)
    building = sum(p.building_hours for p in projects)
    debugging = sum(p.debugging_hours for p in projects)
    total = building + debugging
    completed = sum(1 for p in projects if p.status == "complete")

    debug_minutes = [d.time_spent_minutes for d in debug_logs if d.time_spent_minutes is not None]
    avg_debug = round(sum(debug_minutes) / len(debug_minutes), 1) if debug_minutes else 0.0

    return Analytics(
        total_hours=round(total, 1),
        building_hours=round(building, 1),
        debugging_hours=round(debugging, 1),
        building_ratio=_percent(building, total),
        debugging_ratio=_percent(debugging, total),
        completion_rate=_percent(completed, len(projects)),
        avg_debug_time=avg_debug,
        active_projects=sum(1 for p in projects if p.is_active),
        completed_this_month=sum(1 for p in projects if _completed_in_month(p, now)),
        learning_hours=round(learning_minutes / 60, 1),
    )


def debugging_insights(projects: Iterable[Project]) -> List[Insight]:
    """Projects spending most of their tracked time debugging."""
    insights = []
    for p in projects:
        total = p.total_hours
        if total <= 0 or p.debugging_hours / total <= DEBUGGING_WARNING_RATIO:
            continue
        insights.append(Insight(
            project_id=p.id,
            title="Debugging time elevated",
            description=(
                f"{_percent(p.debugging_hours, total)}% of {p.name} time spent debugging "
                f"({p.debugging_hours:.1f}h) vs. building ({p.building_hours:.1f}h)"
            ),
            action="Review debug logs",
        ))
    return insights
