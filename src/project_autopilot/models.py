"""Persisted records: projects, time logs, debug logs and learning logs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .session import NudgeFlags, SessionKind

ProjectStatus = Literal["planning", "building", "debugging", "testing", "complete", "paused"]
ProjectPriority = Literal["low", "medium", "high"]

LEARNING_SOURCES = ("nate-jones", "other-substacks", "tiktok-ai", "claude-code", "other")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def epoch_to_iso(seconds: float) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


def iso_to_epoch(value: str) -> float:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class Project(BaseModel):
    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    status: ProjectStatus = "planning"
    priority: ProjectPriority = "medium"
    building_hours: float = 0.0
    debugging_hours: float = 0.0
    progress: int = 0
    estimated_hours: Optional[float] = None
    next_action: Optional[str] = None
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None

    @property
    def total_hours(self) -> float:
        return self.building_hours + self.debugging_hours

    @property
    def is_active(self) -> bool:
        return self.status not in ("complete", "paused")


class TimeLog(BaseModel):
    id: str
    project_id: str
    user_id: str
    kind: SessionKind
    started_at: str
    ended_at: Optional[str] = None
    duration_minutes: Optional[float] = None
    notes: Optional[str] = None
    hours_applied: bool = False
    sixty_min_fired: bool = False
    ninety_min_fired: bool = False
    one_twenty_min_fired: bool = False
    extended_mode: bool = False
    created_at: str

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def nudge_flags(self) -> NudgeFlags:
        return NudgeFlags(
            sixty_min_fired=self.sixty_min_fired,
            ninety_min_fired=self.ninety_min_fired,
            one_twenty_min_fired=self.one_twenty_min_fired,
        )


class DebugAttempt(BaseModel):
    attempt: str
    timestamp: str


class DebugLog(BaseModel):
    id: str
    project_id: str
    user_id: str
    error_description: Optional[str] = None
    attempts: List[DebugAttempt] = Field(default_factory=list)
    hypothesis: Optional[str] = None
    solution: Optional[str] = None
    time_spent_minutes: Optional[float] = None
    created_at: str


class LearningLog(BaseModel):
    id: str
    user_id: str
    sources: List[str] = Field(default_factory=list)
    other_source: Optional[str] = None
    topic: Optional[str] = None
    description: Optional[str] = None
    started_at: str
    ended_at: Optional[str] = None
    duration_minutes: float = 0.0
    is_manual: bool = True
    created_at: str
