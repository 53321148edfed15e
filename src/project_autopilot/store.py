"""
SQLite-backed storage for projects, time logs, debug logs and learning logs.

The timer core only consumes the `TimerStore` protocol; `SqliteStore` is the
concrete implementation used by the server and the CLI. Every operation opens
its own aiosqlite connection, and driver errors surface as StorageError.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional, Protocol

import aiosqlite

from .errors import NotFoundError, StorageError
from .models import DebugLog, LearningLog, Project, TimeLog, now_iso
from .session import NudgeFlags, SessionKind

logger = logging.getLogger("project_autopilot.store")

# Columns a caller may change through update_project()
PROJECT_UPDATABLE = {
    "name",
    "description",
    "status",
    "priority",
    "progress",
    "estimated_hours",
    "next_action",
    "completed_at",
    "building_hours",
    "debugging_hours",
}


# Per-session nudge state persisted on the open time log
SESSION_STATE_COLUMNS = ("sixty_min_fired", "ninety_min_fired", "one_twenty_min_fired", "extended_mode")


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class TimerStore(Protocol):
    """Operations the timer core needs from storage."""

    async def create_open_time_log(
        self, project_id: str, user_id: str, kind: SessionKind, started_at: str
    ) -> TimeLog: ...

    async def close_time_log(
        self, record_id: str, ended_at: str, duration_minutes: float
    ) -> TimeLog: ...

    async def get_project(self, project_id: str) -> Optional[Project]: ...

    async def add_project_hours(
        self,
        project_id: str,
        kind: SessionKind,
        hours_delta: float,
        source_record_id: Optional[str] = None,
    ) -> Project: ...

    async def get_open_time_log(self, user_id: str) -> Optional[TimeLog]: ...

    async def list_unapplied_time_logs(self, user_id: str) -> List[TimeLog]: ...

    async def save_session_state(
        self, record_id: str, flags: NudgeFlags, extended_mode: bool
    ) -> None: ...

    async def create_debug_log(
        self,
        project_id: str,
        user_id: str,
        attempts: Optional[List[str]] = None,
        hypothesis: Optional[str] = None,
        time_spent_minutes: Optional[float] = None,
    ) -> DebugLog: ...


class SqliteStore:
    """aiosqlite implementation of TimerStore plus the dashboard CRUD."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    # ── DB Schema ──────────────────────────────────────────────

    @staticmethod
    async def init_tables(db: aiosqlite.Connection):
        """Create all tables. Safe to call on every startup."""
        await db.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'planning',
                priority TEXT NOT NULL DEFAULT 'medium',
                building_hours REAL NOT NULL DEFAULT 0,
                debugging_hours REAL NOT NULL DEFAULT 0,
                progress INTEGER NOT NULL DEFAULT 0,
                estimated_hours REAL,
                next_action TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            )
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id)")

        await db.execute("""
            CREATE TABLE IF NOT EXISTS time_logs (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                duration_minutes REAL,
                notes TEXT,
                hours_applied INTEGER NOT NULL DEFAULT 0,
                sixty_min_fired INTEGER NOT NULL DEFAULT 0,
                ninety_min_fired INTEGER NOT NULL DEFAULT 0,
                one_twenty_min_fired INTEGER NOT NULL DEFAULT 0,
                extended_mode INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        # Migration: session state columns on databases created before they existed
        cursor = await db.execute("PRAGMA table_info(time_logs)")
        columns = {row[1] for row in await cursor.fetchall()}
        for col in SESSION_STATE_COLUMNS:
            if col not in columns:
                await db.execute(f"ALTER TABLE time_logs ADD COLUMN {col} INTEGER NOT NULL DEFAULT 0")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_time_logs_user ON time_logs(user_id, started_at DESC)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_time_logs_open ON time_logs(user_id, ended_at)")

        await db.execute("""
            CREATE TABLE IF NOT EXISTS debug_logs (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                error_description TEXT,
                attempts TEXT NOT NULL DEFAULT '[]',
                hypothesis TEXT,
                solution TEXT,
                time_spent_minutes REAL,
                created_at TEXT NOT NULL
            )
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_debug_logs_user ON debug_logs(user_id)")

        await db.execute("""
            CREATE TABLE IF NOT EXISTS learning_logs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                sources TEXT NOT NULL DEFAULT '[]',
                other_source TEXT,
                topic TEXT,
                description TEXT,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                duration_minutes REAL NOT NULL DEFAULT 0,
                is_manual INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_learning_logs_user ON learning_logs(user_id, started_at DESC)")

    async def initialize(self) -> None:
        """Create the DB file and tables."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create database directory {self.db_path.parent}: {e}") from e
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await self.init_tables(db)
            await db.commit()
        logger.info(f"Database ready at {self.db_path}")

    @asynccontextmanager
    async def _connect(self):
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                # Prevent blocking on lock contention
                await db.execute("PRAGMA busy_timeout=5000")
                yield db
        except aiosqlite.Error as e:
            logger.error(f"Storage error on {self.db_path}: {e}")
            raise StorageError(str(e)) from e

    # ── Projects ───────────────────────────────────────────────

    @staticmethod
    def _row_to_project(row: aiosqlite.Row) -> Project:
        return Project(**dict(row))

    async def create_project(
        self,
        user_id: str,
        name: str,
        description: Optional[str] = None,
        status: str = "planning",
        priority: str = "medium",
        estimated_hours: Optional[float] = None,
        next_action: Optional[str] = None,
    ) -> Project:
        now = now_iso()
        project = Project(
            id=_new_id("proj"),
            user_id=user_id,
            name=name,
            description=description,
            status=status,
            priority=priority,
            estimated_hours=estimated_hours,
            next_action=next_action,
            created_at=now,
            updated_at=now,
        )
        async with self._connect() as db:
            await db.execute(
                """INSERT INTO projects
                   (id, user_id, name, description, status, priority, building_hours,
                    debugging_hours, progress, estimated_hours, next_action, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, 0, 0, 0, ?, ?, ?, ?)""",
                (project.id, user_id, name, description, project.status, project.priority,
                 estimated_hours, next_action, now, now),
            )
            await db.commit()
        logger.info(f"Created project {project.id} ({name})")
        return project

    async def get_project(self, project_id: str) -> Optional[Project]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
        return self._row_to_project(row) if row else None

    async def list_projects(self, user_id: str) -> List[Project]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at", (user_id,)
            )
            rows = await cursor.fetchall()
        return [self._row_to_project(r) for r in rows]

    async def update_project(self, project_id: str, **updates) -> Optional[Project]:
        unknown = set(updates) - PROJECT_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update project fields: {', '.join(sorted(unknown))}")
        if not updates:
            return await self.get_project(project_id)

        # Validate through the model before touching the row
        current = await self.get_project(project_id)
        if current is None:
            return None
        merged = Project(**{**current.model_dump(), **updates})

        assignments = ", ".join(f"{col} = ?" for col in updates)
        values = [getattr(merged, col) for col in updates]
        async with self._connect() as db:
            await db.execute(
                f"UPDATE projects SET {assignments}, updated_at = ? WHERE id = ?",
                (*values, now_iso(), project_id),
            )
            await db.commit()
        return await self.get_project(project_id)

    async def delete_project(self, project_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted project {project_id}")
        return deleted

    async def pause_project(self, project_id: str) -> Optional[Project]:
        return await self.update_project(project_id, status="paused")

    async def complete_project(self, project_id: str) -> Optional[Project]:
        return await self.update_project(
            project_id, status="complete", progress=100, completed_at=now_iso()
        )

    async def reset_project_hours(self, user_id: str) -> List[Project]:
        async with self._connect() as db:
            await db.execute(
                "UPDATE projects SET building_hours = 0, debugging_hours = 0, updated_at = ? WHERE user_id = ?",
                (now_iso(), user_id),
            )
            await db.commit()
        projects = await self.list_projects(user_id)
        logger.info(f"Reset hours for {len(projects)} projects")
        return projects

    async def add_project_hours(
        self,
        project_id: str,
        kind: SessionKind,
        hours_delta: float,
        source_record_id: Optional[str] = None,
    ) -> Project:
        """Add hours to the column matching `kind`.

        With source_record_id the increment and the record's hours_applied
        flag commit together, and an already-applied record is a no-op.
        """
        column = SessionKind(kind).hours_field
        if column is None:
            raise ValueError(f"Sessions of kind '{kind}' do not carry project hours")

        async with self._connect() as db:
            cursor = await db.execute("SELECT id FROM projects WHERE id = ?", (project_id,))
            if await cursor.fetchone() is None:
                raise NotFoundError("Project", project_id)

            if source_record_id is not None:
                cursor = await db.execute(
                    "SELECT hours_applied FROM time_logs WHERE id = ?", (source_record_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    raise NotFoundError("Time log", source_record_id)
                if row["hours_applied"]:
                    logger.info(f"Hours for {source_record_id} already applied, skipping")
                    cursor = await db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
                    return self._row_to_project(await cursor.fetchone())

            await db.execute(
                f"UPDATE projects SET {column} = {column} + ?, updated_at = ? WHERE id = ?",
                (hours_delta, now_iso(), project_id),
            )
            if source_record_id is not None:
                await db.execute(
                    "UPDATE time_logs SET hours_applied = 1 WHERE id = ?", (source_record_id,)
                )
            await db.commit()

            cursor = await db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            project = self._row_to_project(await cursor.fetchone())
        logger.info(f"Added {hours_delta:.4f}h {column} to {project_id}")
        return project

    # ── Time Logs ──────────────────────────────────────────────

    @staticmethod
    def _row_to_time_log(row: aiosqlite.Row) -> TimeLog:
        return TimeLog(**dict(row))

    async def create_open_time_log(
        self, project_id: str, user_id: str, kind: SessionKind, started_at: str
    ) -> TimeLog:
        log = TimeLog(
            id=_new_id("time"),
            project_id=project_id,
            user_id=user_id,
            kind=SessionKind(kind),
            started_at=started_at,
            created_at=now_iso(),
        )
        async with self._connect() as db:
            await db.execute(
                """INSERT INTO time_logs (id, project_id, user_id, kind, started_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (log.id, project_id, user_id, log.kind.value, started_at, log.created_at),
            )
            await db.commit()
        return log

    async def get_time_log(self, record_id: str) -> Optional[TimeLog]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM time_logs WHERE id = ?", (record_id,))
            row = await cursor.fetchone()
        return self._row_to_time_log(row) if row else None

    async def close_time_log(
        self, record_id: str, ended_at: str, duration_minutes: float, notes: Optional[str] = None
    ) -> TimeLog:
        """Set end time and duration. Re-closing overwrites until hours are applied."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM time_logs WHERE id = ?", (record_id,))
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError("Time log", record_id)
            if row["hours_applied"]:
                return self._row_to_time_log(row)

            await db.execute(
                """UPDATE time_logs SET ended_at = ?, duration_minutes = ?,
                   notes = COALESCE(?, notes) WHERE id = ?""",
                (ended_at, duration_minutes, notes, record_id),
            )
            await db.commit()
            cursor = await db.execute("SELECT * FROM time_logs WHERE id = ?", (record_id,))
            return self._row_to_time_log(await cursor.fetchone())

    async def save_session_state(
        self, record_id: str, flags: NudgeFlags, extended_mode: bool
    ) -> None:
        """Record fired nudges and extended mode on an open time log."""
        async with self._connect() as db:
            cursor = await db.execute(
                """UPDATE time_logs SET sixty_min_fired = ?, ninety_min_fired = ?,
                   one_twenty_min_fired = ?, extended_mode = ?
                   WHERE id = ? AND ended_at IS NULL""",
                (int(flags.sixty_min_fired), int(flags.ninety_min_fired),
                 int(flags.one_twenty_min_fired), int(extended_mode), record_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("Open time log", record_id)

    async def get_open_time_log(self, user_id: str) -> Optional[TimeLog]:
        async with self._connect() as db:
            cursor = await db.execute(
                """SELECT * FROM time_logs WHERE user_id = ? AND ended_at IS NULL
                   ORDER BY started_at DESC LIMIT 1""",
                (user_id,),
            )
            row = await cursor.fetchone()
        return self._row_to_time_log(row) if row else None

    async def list_time_logs(
        self, user_id: str, project_id: Optional[str] = None, limit: int = 100
    ) -> List[TimeLog]:
        query = "SELECT * FROM time_logs WHERE user_id = ?"
        params: list = [user_id]
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [self._row_to_time_log(r) for r in rows]

    async def list_unapplied_time_logs(self, user_id: str) -> List[TimeLog]:
        """Closed building/debugging records whose hours never reached the project."""
        async with self._connect() as db:
            cursor = await db.execute(
                """SELECT * FROM time_logs
                   WHERE user_id = ? AND ended_at IS NOT NULL AND hours_applied = 0
                   AND kind IN ('building', 'debugging')
                   ORDER BY started_at""",
                (user_id,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_time_log(r) for r in rows]

    # ── Debug Logs ─────────────────────────────────────────────

    @staticmethod
    def _row_to_debug_log(row: aiosqlite.Row) -> DebugLog:
        data = dict(row)
        data["attempts"] = json.loads(data.get("attempts") or "[]")
        return DebugLog(**data)

    async def create_debug_log(
        self,
        project_id: str,
        user_id: str,
        attempts: Optional[List[str]] = None,
        hypothesis: Optional[str] = None,
        time_spent_minutes: Optional[float] = None,
        error_description: Optional[str] = None,
        solution: Optional[str] = None,
    ) -> DebugLog:
        created = now_iso()
        log = DebugLog(
            id=_new_id("debug"),
            project_id=project_id,
            user_id=user_id,
            error_description=error_description,
            attempts=[{"attempt": a, "timestamp": created} for a in (attempts or []) if a],
            hypothesis=hypothesis,
            solution=solution,
            time_spent_minutes=time_spent_minutes,
            created_at=created,
        )
        async with self._connect() as db:
            await db.execute(
                """INSERT INTO debug_logs
                   (id, project_id, user_id, error_description, attempts, hypothesis,
                    solution, time_spent_minutes, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (log.id, project_id, user_id, error_description,
                 json.dumps([a.model_dump() for a in log.attempts]),
                 hypothesis, solution, time_spent_minutes, created),
            )
            await db.commit()
        logger.info(f"Created debug log {log.id} for {project_id}")
        return log

    async def list_debug_logs(self, user_id: str, project_id: Optional[str] = None) -> List[DebugLog]:
        query = "SELECT * FROM debug_logs WHERE user_id = ?"
        params: list = [user_id]
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        query += " ORDER BY created_at DESC"
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [self._row_to_debug_log(r) for r in rows]

    # ── Learning Logs ──────────────────────────────────────────

    @staticmethod
    def _row_to_learning_log(row: aiosqlite.Row) -> LearningLog:
        data = dict(row)
        data["sources"] = json.loads(data.get("sources") or "[]")
        return LearningLog(**data)

    async def create_learning_log(
        self,
        user_id: str,
        started_at: str,
        duration_minutes: float,
        sources: Optional[List[str]] = None,
        other_source: Optional[str] = None,
        topic: Optional[str] = None,
        description: Optional[str] = None,
        ended_at: Optional[str] = None,
        is_manual: bool = True,
    ) -> LearningLog:
        if duration_minutes < 0:
            raise ValueError("duration_minutes cannot be negative")
        log = LearningLog(
            id=_new_id("learn"),
            user_id=user_id,
            sources=sources or [],
            other_source=other_source,
            topic=topic,
            description=description,
            started_at=started_at,
            ended_at=ended_at,
            duration_minutes=duration_minutes,
            is_manual=is_manual,
            created_at=now_iso(),
        )
        async with self._connect() as db:
            await db.execute(
                """INSERT INTO learning_logs
                   (id, user_id, sources, other_source, topic, description, started_at,
                    ended_at, duration_minutes, is_manual, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (log.id, user_id, json.dumps(log.sources), other_source, topic, description,
                 started_at, ended_at, duration_minutes, int(is_manual), log.created_at),
            )
            await db.commit()
        return log

    async def list_learning_logs(self, user_id: str) -> List[LearningLog]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM learning_logs WHERE user_id = ? ORDER BY started_at DESC", (user_id,)
            )
            rows = await cursor.fetchall()
        return [self._row_to_learning_log(r) for r in rows]

    async def total_learning_minutes(self, user_id: str) -> float:
        """Manual learning entries plus closed learning timer sessions."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT COALESCE(SUM(duration_minutes), 0) FROM learning_logs WHERE user_id = ?",
                (user_id,),
            )
            logged = (await cursor.fetchone())[0]
            cursor = await db.execute(
                """SELECT COALESCE(SUM(duration_minutes), 0) FROM time_logs
                   WHERE user_id = ? AND kind = 'learning' AND ended_at IS NOT NULL""",
                (user_id,),
            )
            timed = (await cursor.fetchone())[0]
        return float(logged) + float(timed)

    # ── Maintenance ────────────────────────────────────────────

    async def clear_all_data(self, user_id: str) -> dict:
        counts = {}
        async with self._connect() as db:
            for table in ("projects", "time_logs", "debug_logs", "learning_logs"):
                cursor = await db.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
                counts[table] = cursor.rowcount
            await db.commit()
        logger.warning(f"Cleared all data for {user_id}: {counts}")
        return counts
