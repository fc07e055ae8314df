"""Stores the latest analysis result and progress record of each user.

Results are upserted by username. A stored result is reused while it is younger than the freshness window; after that
the analysis is run again. `get_result_store` picks a SQLite file when `LUNAR_STATS_DB_PATH` is set and an in-memory
store otherwise.
"""

import asyncio
import sqlite3
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from pydantic import Field

from lunar_commit_stats.clients.errors.github import PersistenceError
from lunar_commit_stats.models.stats import CommitStats, StatsModel
from lunar_commit_stats.pipeline.progress import ProgressSnapshot
from lunar_commit_stats.utilities.settings import get_db_path, get_freshness_window


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class AnalysisStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StoredAnalysis(StatsModel):
    username: str = Field(description="The user the stats belong to.")
    stats: CommitStats = Field(description="The finalized stats.")
    updated_at: datetime = Field(description="When the stats were stored.")

    def is_fresh(self, now: datetime | None = None, freshness_window: timedelta | None = None) -> bool:
        now = now or _utc_now()
        freshness_window = freshness_window or get_freshness_window()

        return now - self.updated_at < freshness_window


class AnalysisProgressRecord(StatsModel):
    username: str = Field(description="The user running the analysis.")
    status: AnalysisStatus = Field(description="Whether the analysis is running, completed or failed.")
    progress: ProgressSnapshot | None = Field(default=None, description="The latest progress snapshot.")
    error: str | None = Field(default=None, description="Why the analysis failed.")
    updated_at: datetime = Field(description="When the record was last written.")


class ResultStore(Protocol):
    async def get_analysis(self, username: str) -> StoredAnalysis | None: ...

    async def put_analysis(self, username: str, stats: CommitStats) -> StoredAnalysis: ...

    async def get_progress(self, username: str) -> AnalysisProgressRecord | None: ...

    async def put_progress(
        self, username: str, status: AnalysisStatus, progress: ProgressSnapshot | None = None, error: str | None = None
    ) -> AnalysisProgressRecord: ...

    async def aclose(self) -> None: ...


class InMemoryResultStore:
    """Keeps results for the lifetime of the process."""

    def __init__(self, now: Callable[[], datetime] | None = None):
        self._now = now or _utc_now
        self._analyses: dict[str, StoredAnalysis] = {}
        self._progress: dict[str, AnalysisProgressRecord] = {}

    async def get_analysis(self, username: str) -> StoredAnalysis | None:
        return self._analyses.get(username)

    async def put_analysis(self, username: str, stats: CommitStats) -> StoredAnalysis:
        stored_analysis = StoredAnalysis(username=username, stats=stats, updated_at=self._now())
        self._analyses[username] = stored_analysis
        return stored_analysis

    async def get_progress(self, username: str) -> AnalysisProgressRecord | None:
        return self._progress.get(username)

    async def put_progress(
        self, username: str, status: AnalysisStatus, progress: ProgressSnapshot | None = None, error: str | None = None
    ) -> AnalysisProgressRecord:
        record = AnalysisProgressRecord(username=username, status=status, progress=progress, error=error, updated_at=self._now())
        self._progress[username] = record
        return record

    async def aclose(self) -> None:
        pass


class SQLiteResultStore:
    """Keeps results in a SQLite file. Queries run in a worker thread so they never block the event loop."""

    def __init__(self, db_path: Path | str, now: Callable[[], datetime] | None = None):
        self.db_path: Path = Path(db_path)
        self._now = now or _utc_now
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS commit_stats (
                username    TEXT PRIMARY KEY,
                stats       TEXT NOT NULL,
                updated_at  TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS analysis_progress (
                username    TEXT PRIMARY KEY,
                status      TEXT NOT NULL,
                progress    TEXT,
                error       TEXT,
                updated_at  TEXT NOT NULL
            )
            """
        )
        conn.commit()

        self._conn = conn
        return conn

    async def _run(self, action: str, query: str, parameters: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        def execute() -> sqlite3.Row | None:
            with self._lock:
                conn = self._connect()
                row = conn.execute(query, parameters).fetchone()
                conn.commit()
                return row

        try:
            return await asyncio.to_thread(execute)
        except sqlite3.Error as e:
            raise PersistenceError(action=action, message=str(e)) from e

    async def get_analysis(self, username: str) -> StoredAnalysis | None:
        row = await self._run(
            action="Get analysis",
            query="SELECT username, stats, updated_at FROM commit_stats WHERE username = ?",
            parameters=(username,),
        )

        if row is None:
            return None

        return StoredAnalysis(
            username=row["username"],
            stats=CommitStats.model_validate_json(row["stats"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def put_analysis(self, username: str, stats: CommitStats) -> StoredAnalysis:
        stored_analysis = StoredAnalysis(username=username, stats=stats, updated_at=self._now())

        await self._run(
            action="Put analysis",
            query="""
                INSERT INTO commit_stats (username, stats, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(username) DO UPDATE SET stats = excluded.stats, updated_at = excluded.updated_at
            """,
            parameters=(username, stats.model_dump_json(by_alias=True), stored_analysis.updated_at.isoformat()),
        )

        return stored_analysis

    async def get_progress(self, username: str) -> AnalysisProgressRecord | None:
        row = await self._run(
            action="Get progress",
            query="SELECT username, status, progress, error, updated_at FROM analysis_progress WHERE username = ?",
            parameters=(username,),
        )

        if row is None:
            return None

        return AnalysisProgressRecord(
            username=row["username"],
            status=AnalysisStatus(row["status"]),
            progress=ProgressSnapshot.model_validate_json(row["progress"]) if row["progress"] else None,
            error=row["error"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def put_progress(
        self, username: str, status: AnalysisStatus, progress: ProgressSnapshot | None = None, error: str | None = None
    ) -> AnalysisProgressRecord:
        record = AnalysisProgressRecord(username=username, status=status, progress=progress, error=error, updated_at=self._now())

        await self._run(
            action="Put progress",
            query="""
                INSERT INTO analysis_progress (username, status, progress, error, updated_at) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(username) DO UPDATE SET
                    status = excluded.status, progress = excluded.progress, error = excluded.error, updated_at = excluded.updated_at
            """,
            parameters=(
                username,
                status.value,
                progress.model_dump_json(by_alias=True, exclude_none=True) if progress is not None else None,
                error,
                record.updated_at.isoformat(),
            ),
        )

        return record

    async def aclose(self) -> None:
        def close() -> None:
            with self._lock:
                if self._conn is not None:
                    self._conn.close()
                    self._conn = None

        await asyncio.to_thread(close)


def get_result_store() -> ResultStore:
    if db_path := get_db_path():
        return SQLiteResultStore(db_path=db_path)

    return InMemoryResultStore()
