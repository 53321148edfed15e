"""Project Autopilot: local project tracker with a building/debugging session timer.

The timer core (session, nudges, timer, reconcile, service) has no web
dependency; the FastAPI server lives in `project_autopilot.api`.
"""

__version__ = "0.1.0"

from .errors import (
    AlreadyRunningError,
    AlreadyStoppingError,
    AutopilotError,
    ConfigError,
    NotFoundError,
    NotRunningError,
    RecordMissingError,
    StopFailedError,
    StorageError,
    TimerError,
)
from .nudges import Nudge, NudgeAction, NudgeEffect, NudgeThresholds, evaluate
from .service import NudgeNotice, TimerService
from .session import NudgeFlags, SessionKind, TimerSession
from .store import SqliteStore, TimerStore
from .timer import TickResult, TimerMachine, TimerPhase

__all__ = [
    "__version__",
    "AlreadyRunningError",
    "AlreadyStoppingError",
    "AutopilotError",
    "ConfigError",
    "NotFoundError",
    "NotRunningError",
    "Nudge",
    "NudgeAction",
    "NudgeEffect",
    "NudgeFlags",
    "NudgeNotice",
    "NudgeThresholds",
    "RecordMissingError",
    "SessionKind",
    "SqliteStore",
    "StopFailedError",
    "StorageError",
    "TickResult",
    "TimerError",
    "TimerMachine",
    "TimerPhase",
    "TimerService",
    "TimerSession",
    "TimerStore",
    "evaluate",
]
