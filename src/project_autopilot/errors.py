"""Exception types shared by the timer core, the store and the API layer."""

from __future__ import annotations


class AutopilotError(Exception):
    """Base class for every error raised by project_autopilot."""


class ConfigError(AutopilotError):
    """Invalid configuration value."""


class TimerError(AutopilotError):
    """Invalid timer transition."""


class AlreadyRunningError(TimerError):
    def __init__(self, project_id: str | None = None):
        self.project_id = project_id
        super().__init__("A timer is already running. Stop the current timer first.")


class AlreadyStoppingError(TimerError):
    def __init__(self):
        super().__init__("The timer is already stopping. Wait for the current stop to finish.")


class NotRunningError(TimerError):
    def __init__(self, action: str = "this"):
        super().__init__(f"No timer is running, cannot {action}.")


class StorageError(AutopilotError):
    """A storage round-trip failed. Always safe to retry."""


class NotFoundError(StorageError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class StopFailedError(TimerError):
    """Reconciliation failed; the session is still running and nothing was lost."""

    def __init__(self, elapsed_seconds: int, cause: Exception):
        self.elapsed_seconds = elapsed_seconds
        self.cause = cause
        hours = elapsed_seconds / 3600
        super().__init__(
            f"Failed to stop timer. Your {hours:.1f}h of work is NOT lost - the timer will keep "
            f"running. Please try stopping again or check your connection. ({cause})"
        )


class RecordMissingError(TimerError):
    """The session's time log no longer exists; the session was discarded."""

    def __init__(self, record_id: str, elapsed_seconds: int):
        self.record_id = record_id
        self.elapsed_seconds = elapsed_seconds
        hours = elapsed_seconds / 3600
        super().__init__(
            f"The time log for this session ({record_id}) no longer exists, so its "
            f"{hours:.1f}h could not be saved. The timer has been cleared; start a new one to keep tracking."
        )
