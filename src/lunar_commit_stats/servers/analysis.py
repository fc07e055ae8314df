import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, tzinfo
from logging import Logger
from typing import Any

from fastmcp.server import FastMCP
from fastmcp.server.dependencies import get_context
from fastmcp.tools import Tool
from fastmcp.utilities.logging import get_logger
from pydantic import BaseModel, Field

from lunar_commit_stats.clients.errors.github import ClientError, PersistenceError
from lunar_commit_stats.clients.github import GitHubCommitClient
from lunar_commit_stats.clients.store import AnalysisStatus, ResultStore, StoredAnalysis, get_result_store
from lunar_commit_stats.lunar.phases import (
    LUNAR_PHASES,
    PhaseInfo,
    PhaseLabel,
    TimeOfDayBucket,
    classify_phase,
    classify_time_of_day,
    phase_fraction,
)
from lunar_commit_stats.models.stats import CommitStats
from lunar_commit_stats.pipeline.cancellation import AnalysisCancelledError, CancellationToken
from lunar_commit_stats.pipeline.orchestrator import AnalysisMode, PipelineOrchestrator
from lunar_commit_stats.pipeline.progress import ProgressChannel, ProgressPublisher, ProgressSnapshot
from lunar_commit_stats.servers.shared.annotations import DETAILED, FORCE_REFRESH, TIMESTAMP
from lunar_commit_stats.servers.shared.errors import AnalysisFailedError, NoAnalysisProgressError, NoCachedStatsError
from lunar_commit_stats.utilities.formatting import format_error
from lunar_commit_stats.utilities.settings import get_lookback_days, get_run_timeout_seconds, get_timezone

ProgressReporter = Callable[[ProgressSnapshot], Awaitable[None]]


class TimestampClassification(BaseModel):
    timestamp: datetime = Field(description="The classified timestamp.")
    phase: PhaseLabel = Field(description="The moon phase at the timestamp.")
    phase_fraction: float = Field(description="How far through the lunar cycle the timestamp is, from 0 (new moon) up to 1.")
    time_of_day: TimeOfDayBucket = Field(description="The part of the day the timestamp falls in, in the server's time zone.")


async def report_to_context(snapshot: ProgressSnapshot) -> None:
    """Forward a snapshot to the MCP client as a progress notification."""

    percentage: int = snapshot.progress.percentage if snapshot.progress else 0

    await get_context().report_progress(progress=percentage, total=100, message=snapshot.message)


class AnalysisServer:
    result_store: ResultStore
    logger: Logger

    def __init__(
        self,
        commit_client: GitHubCommitClient | None = None,
        result_store: ResultStore | None = None,
        tz: tzinfo | None = None,
        lookback_days: int | None = None,
        run_timeout_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: Logger | None = None,
    ):
        self.logger = logger or get_logger(name=__name__)
        self._commit_client = commit_client
        self.result_store = result_store or get_result_store()
        self.tz = tz if tz is not None else get_timezone()
        self.lookback_days = lookback_days if lookback_days is not None else get_lookback_days()
        self.run_timeout_seconds = run_timeout_seconds if run_timeout_seconds is not None else get_run_timeout_seconds()
        self._sleep = sleep
        self._username: str | None = None

        # One analysis at a time per server.
        self.analysis_lock = asyncio.Lock()

    def register_tools(self, fastmcp: FastMCP[Any]) -> FastMCP[Any]:
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.analyze_commits))
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.get_cached_stats))
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.get_analysis_progress))
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.classify_timestamp))
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.list_lunar_phases))

        return fastmcp

    @property
    def commit_client(self) -> GitHubCommitClient:
        # Created on first use so the server can start without a token.
        if self._commit_client is None:
            self._commit_client = GitHubCommitClient(logger=self.logger)

        return self._commit_client

    async def aclose(self) -> None:
        if self._commit_client is not None:
            await self._commit_client.aclose()
            self._commit_client = None

        await self.result_store.aclose()

    async def get_username(self) -> str:
        try:
            if self._username is None:
                user = await self.commit_client.get_authenticated_user()
                self._username = user.login
        except ClientError as e:
            raise AnalysisFailedError(message=format_error(e, tz=self.tz)) from e

        return self._username

    async def _store_progress(
        self, username: str, status: AnalysisStatus, progress: ProgressSnapshot | None = None, error: str | None = None
    ) -> None:
        try:
            await self.result_store.put_progress(username=username, status=status, progress=progress, error=error)
        except PersistenceError as e:
            self.logger.warning(f"Failed to store analysis progress for {username}: {e}")

    async def _store_analysis(self, username: str, stats: CommitStats) -> None:
        try:
            await self.result_store.put_analysis(username=username, stats=stats)
        except PersistenceError as e:
            self.logger.warning(f"Failed to store stats for {username}: {e}")

    async def _load_analysis(self, username: str) -> StoredAnalysis | None:
        try:
            return await self.result_store.get_analysis(username=username)
        except PersistenceError as e:
            self.logger.warning(f"Failed to load stored stats for {username}: {e}")
            return None

    async def _load_fresh_analysis(self, username: str) -> StoredAnalysis | None:
        if not (stored_analysis := await self._load_analysis(username=username)) or not stored_analysis.is_fresh():
            return None

        self.logger.info(f"Returning stored stats for {username} from {stored_analysis.updated_at.isoformat()}")

        return stored_analysis

    async def _forward_progress(
        self, channel: ProgressChannel, username: str, cancellation_token: CancellationToken, reporter: ProgressReporter
    ) -> ProgressSnapshot | None:
        last_snapshot: ProgressSnapshot | None = None

        async for snapshot in channel:
            last_snapshot = snapshot

            await self._store_progress(username=username, status=AnalysisStatus.RUNNING, progress=snapshot)

            if cancellation_token.cancelled:
                continue

            try:
                await reporter(snapshot)
            except Exception as e:
                self.logger.warning(f"Failed to report progress to the client, stopping the analysis: {e}")
                cancellation_token.cancel(reason="The client stopped receiving progress updates.")

        return last_snapshot

    async def run_analysis(self, username: str, mode: AnalysisMode, reporter: ProgressReporter) -> CommitStats:
        """Run an analysis, forwarding its progress to the reporter and storing the outcome.

        Raises:
            AnalysisFailedError: If the run failed as a whole or was cancelled.
        """

        channel = ProgressChannel()
        cancellation_token = CancellationToken(timeout_seconds=self.run_timeout_seconds)

        orchestrator = PipelineOrchestrator(
            commit_client=self.commit_client,
            username=username,
            mode=mode,
            publisher=ProgressPublisher(channel=channel),
            cancellation_token=cancellation_token,
            lookback_days=self.lookback_days,
            tz=self.tz,
            sleep=self._sleep,
            logger=self.logger,
        )

        forwarder = asyncio.create_task(
            self._forward_progress(channel=channel, username=username, cancellation_token=cancellation_token, reporter=reporter)
        )

        last_snapshot: ProgressSnapshot | None = None

        try:
            try:
                stats: CommitStats = await orchestrator.run()
            finally:
                channel.close()
                last_snapshot = await forwarder
        except (ClientError, AnalysisCancelledError) as e:
            message: str = format_error(e, tz=self.tz)
            await self._store_progress(username=username, status=AnalysisStatus.FAILED, progress=last_snapshot, error=message)
            raise AnalysisFailedError(message=message) from e
        except Exception as e:
            self.logger.exception(f"Analysis for {username} failed unexpectedly")
            message = f"The analysis failed unexpectedly: {format_error(e, tz=self.tz)}"
            await self._store_progress(username=username, status=AnalysisStatus.FAILED, progress=last_snapshot, error=message)
            raise AnalysisFailedError(message=message) from e

        await self._store_progress(username=username, status=AnalysisStatus.COMPLETED, progress=last_snapshot)
        await self._store_analysis(username=username, stats=stats)

        return stats

    async def analyze_commits(self, detailed: DETAILED = False, force_refresh: FORCE_REFRESH = False) -> dict[str, Any]:
        """Analyze the authenticated user's commits across all of their repositories by moon phase and time of day.

        Returns the stored stats instead when they are fresh, unless a refresh is forced. Progress is reported while the
        analysis runs.
        """

        username: str = await self.get_username()

        if not force_refresh and (stored_analysis := await self._load_fresh_analysis(username=username)):
            return stored_analysis.stats.to_json_dict()

        async with self.analysis_lock:
            # A run that held the lock may have just stored fresh stats.
            if not force_refresh and (stored_analysis := await self._load_fresh_analysis(username=username)):
                return stored_analysis.stats.to_json_dict()

            stats: CommitStats = await self.run_analysis(
                username=username,
                mode=AnalysisMode.DETAILED if detailed else AnalysisMode.BASIC,
                reporter=report_to_context,
            )

        return stats.to_json_dict()

    async def get_cached_stats(self) -> dict[str, Any]:
        """Get the stored stats of the authenticated user, when they were stored and whether they are still fresh."""

        username: str = await self.get_username()

        if not (stored_analysis := await self._load_analysis(username=username)):
            raise NoCachedStatsError(username=username)

        return {**stored_analysis.to_json_dict(), "fresh": stored_analysis.is_fresh()}

    async def get_analysis_progress(self) -> dict[str, Any]:
        """Get the latest progress of the authenticated user's analysis, including whether it completed or failed."""

        username: str = await self.get_username()

        try:
            record = await self.result_store.get_progress(username=username)
        except PersistenceError as e:
            raise AnalysisFailedError(message=str(e)) from e

        if record is None:
            raise NoAnalysisProgressError(username=username)

        return record.to_json_dict()

    async def classify_timestamp(self, timestamp: TIMESTAMP) -> TimestampClassification:
        """Classify a timestamp by moon phase and time of day."""

        return TimestampClassification(
            timestamp=timestamp,
            phase=classify_phase(timestamp),
            phase_fraction=phase_fraction(timestamp),
            time_of_day=classify_time_of_day(timestamp, tz=self.tz),
        )

    async def list_lunar_phases(self) -> list[PhaseInfo]:
        """List the eight moon phases in cycle order, with a description and the developer personality of each."""

        return list(LUNAR_PHASES)
