"""Shared fixtures: temp SQLite store, fake clock and a fault-injecting store."""

import asyncio
import inspect

import pytest

from project_autopilot.errors import StorageError
from project_autopilot.store import SqliteStore

USER = "user_test"
T0 = 1_760_000_000.0


def run(coro):
    """Run an async function in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeClock:
    """Injected wall clock; tests move it explicitly."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FlakyStore:
    """Wraps a real store; raises StorageError from chosen methods on demand.

    `fail_next("close_time_log", times=2)` makes the next two calls fail.
    Setting `gate` to an asyncio.Event holds close_time_log until it is set.
    """

    def __init__(self, inner: SqliteStore):
        self.inner = inner
        self.failures: dict[str, int] = {}
        self.calls: dict[str, int] = {}
        self.gate: asyncio.Event | None = None

    def fail_next(self, method: str, times: int = 1):
        self.failures[method] = times

    def __getattr__(self, name):
        target = getattr(self.inner, name)
        if not inspect.iscoroutinefunction(target):
            return target

        async def wrapper(*args, **kwargs):
            self.calls[name] = self.calls.get(name, 0) + 1
            if name == "close_time_log" and self.gate is not None:
                await self.gate.wait()
            if self.failures.get(name, 0) > 0:
                self.failures[name] -= 1
                raise StorageError(f"injected failure in {name}")
            return await target(*args, **kwargs)

        return wrapper


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "autopilot.db"


@pytest.fixture
def store(db_path):
    s = SqliteStore(db_path)
    run(s.initialize())
    return s


@pytest.fixture
def flaky(store):
    return FlakyStore(store)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def project(store):
    return run(store.create_project(USER, "Autopilot"))
