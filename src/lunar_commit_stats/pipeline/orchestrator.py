import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum
from logging import Logger

from fastmcp.utilities.logging import get_logger

from lunar_commit_stats.clients.errors.github import RateLimitedError, ResourceConflictError, ResourceNotFoundError
from lunar_commit_stats.clients.github import GitHubCommitClient
from lunar_commit_stats.clients.models.github import CommitRecord, Repository
from lunar_commit_stats.models.stats import CommitStats, finalize, fold
from lunar_commit_stats.pipeline.cancellation import AnalysisCancelledError, AnalysisTimeoutError, CancellationToken
from lunar_commit_stats.pipeline.enumerator import RepositoryEnumerator
from lunar_commit_stats.pipeline.progress import ProgressDetail, ProgressPublisher
from lunar_commit_stats.pipeline.walker import CommitFilter, CommitWalker
from lunar_commit_stats.utilities.settings import DEFAULT_LOOKBACK_DAYS


class AnalysisMode(StrEnum):
    BASIC = "basic"
    DETAILED = "detailed"


class RunState(StrEnum):
    IDLE = "idle"
    ENUMERATING = "enumerating"
    PROCESSING_BASIC = "processing_basic"
    PROCESSING_DETAILED = "processing_detailed"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class PipelineOrchestrator:
    """Runs one analysis: enumerate repositories, walk each one's commits, fold them, and finalize the stats.

    A failure inside one repository is logged and the run moves on to the next repository. Only resolving the user or
    listing the repositories can fail the run as a whole. The run stops at the next repository or batch boundary once its
    cancellation token fires.
    """

    commit_client: GitHubCommitClient
    mode: AnalysisMode
    publisher: ProgressPublisher
    state: RunState
    stats: CommitStats
    logger: Logger

    def __init__(
        self,
        commit_client: GitHubCommitClient,
        username: str | None = None,
        verified_emails: Sequence[str] | None = None,
        mode: AnalysisMode = AnalysisMode.BASIC,
        publisher: ProgressPublisher | None = None,
        cancellation_token: CancellationToken | None = None,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        tz: tzinfo | None = None,
        now: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: Logger | None = None,
    ):
        self.commit_client = commit_client
        self.username = username
        self.verified_emails = verified_emails
        self.mode = mode
        self.publisher = publisher or ProgressPublisher()
        self.cancellation_token = cancellation_token or CancellationToken()
        self.lookback_days = lookback_days
        self.tz = tz
        self._now = now or _utc_now
        self._sleep = sleep or asyncio.sleep
        self.logger = logger or get_logger(name=__name__)

        self.state = RunState.IDLE
        self.stats = CommitStats()
        self.processed_commits: int = 0
        self.processed_repositories: int = 0

    async def _resolve_identity(self) -> CommitFilter:
        if self.username is None:
            user = await self.commit_client.get_authenticated_user()
            self.username = user.login

        if self.verified_emails is None:
            self.verified_emails = await self.commit_client.list_verified_emails()

        return CommitFilter(username=self.username, verified_emails=self.verified_emails)

    def _since(self) -> datetime | None:
        if self.mode is not AnalysisMode.DETAILED:
            return None

        return self._now() - timedelta(days=self.lookback_days)

    def _fold(self, commit: CommitRecord, repository_index: int, repository_count: int) -> None:
        fold(commit, self.stats, tz=self.tz)
        self.processed_commits += 1

        if self.mode is AnalysisMode.DETAILED and self.publisher.is_commit_checkpoint(self.processed_commits):
            self.publisher.publish(
                message=f"Processed {self.processed_commits} commits...",
                progress=ProgressDetail.build(current=repository_index, total=repository_count, stats=self.stats),
            )

    async def _process_repository(self, walker: CommitWalker, repository: Repository, repository_index: int, repository_count: int) -> None:
        self.state = RunState.PROCESSING_BASIC

        commits: list[CommitRecord] = await walker.list_commits(repository=repository, since=self._since())

        if self.mode is AnalysisMode.BASIC:
            for commit in commits:
                self._fold(commit, repository_index=repository_index, repository_count=repository_count)
            return

        self.state = RunState.PROCESSING_DETAILED

        async for batch in walker.iter_detailed_batches(repository=repository, commits=commits, cancellation_token=self.cancellation_token):
            for commit in batch:
                self._fold(commit, repository_index=repository_index, repository_count=repository_count)

    async def _process_repository_isolated(
        self, walker: CommitWalker, repository: Repository, repository_index: int, repository_count: int
    ) -> None:
        try:
            await self._process_repository(
                walker=walker, repository=repository, repository_index=repository_index, repository_count=repository_count
            )
        except AnalysisCancelledError:
            raise
        except (ResourceNotFoundError, ResourceConflictError) as e:
            self.logger.debug(f"Skipping repository {repository.full_name}: {e}")
        except RateLimitedError as e:
            self.logger.warning(f"Skipping repository {repository.full_name}, still rate limited after retrying: {e}")
        except Exception:
            self.logger.exception(f"Unexpected error processing repository {repository.full_name}, skipping it")

    async def run(self) -> CommitStats:
        """Run the analysis to completion and return the finalized stats.

        Raises:
            ClientError: If the user cannot be resolved or the repositories cannot be listed.
            AnalysisCancelledError: If the run was cancelled or went past its deadline.
        """

        self.state = RunState.ENUMERATING

        try:
            commit_filter: CommitFilter = await self._resolve_identity()

            self.publisher.publish(message="Fetching repositories...")

            repositories: list[Repository] = await RepositoryEnumerator(commit_client=self.commit_client, logger=self.logger).list_repositories()
        except Exception as e:
            self.state = RunState.FAILED
            self.publisher.publish(message=f"Analysis failed: {e}")
            raise

        walker = CommitWalker(
            commit_client=self.commit_client,
            commit_filter=commit_filter,
            cancellation_token=self.cancellation_token,
            sleep=self._sleep,
            logger=self.logger,
        )
        repository_count: int = len(repositories)

        try:
            for repository_index, repository in enumerate(repositories, start=1):
                self.cancellation_token.raise_if_cancelled()

                self.publisher.publish(
                    message=f"Processing repository {repository_index}/{repository_count}...",
                    progress=ProgressDetail.build(current=repository_index - 1, total=repository_count, stats=self.stats),
                )

                await self._process_repository_isolated(
                    walker=walker, repository=repository, repository_index=repository_index, repository_count=repository_count
                )

                self.processed_repositories += 1
        except AnalysisTimeoutError as e:
            self.state = RunState.FAILED
            self.publisher.publish(message=f"Analysis failed: {e}")
            raise
        except AnalysisCancelledError as e:
            self.state = RunState.CANCELLED
            self.logger.info(f"Analysis cancelled after {self.processed_repositories} repositories: {e}")
            raise

        self.state = RunState.FINALIZING

        self.stats = finalize(self.stats)

        self.state = RunState.COMPLETED

        self.logger.info(
            f"Analysis complete! Processed {self.processed_commits} commits across {self.processed_repositories} repositories "
            + f"(dominant phase: {self.stats.dominant_phase()})"
        )

        self.publisher.publish(
            message=f"Analysis complete! Processed {self.processed_commits} commits across {self.processed_repositories} repositories.",
            progress=ProgressDetail.build(current=repository_count, total=repository_count, stats=self.stats),
        )

        return self.stats
