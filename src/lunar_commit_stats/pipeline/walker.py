"""Walks the commits of one repository.

Commits are listed page by page for the target author, then filtered so that automation (bots, no-reply addresses,
merge identities) is dropped unless the commit demonstrably belongs to the user. Diff statistics are fetched per
commit in batches of `DETAIL_BATCH_SIZE`. The fetches of a batch are dispatched together, but each one still goes
through the client's single-flight rate limiter, so a batch bounds how many commits can lose their statistics to one
failure rather than adding parallel throughput.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from datetime import datetime
from logging import Logger
from typing import TypeVar

from fastmcp.utilities.logging import get_logger

from lunar_commit_stats.clients.errors.github import RateLimitedError, RequestError
from lunar_commit_stats.clients.github import DEFAULT_PER_PAGE, GitHubCommitClient
from lunar_commit_stats.clients.models.github import CommitRecord, Repository
from lunar_commit_stats.pipeline.cancellation import CancellationToken

T = TypeVar("T")

DETAIL_BATCH_SIZE = 5

# Emails and logins that GitHub uses for automated commits.
AUTOMATION_IDENTITIES: frozenset[str] = frozenset(
    {
        "noreply@github.com",
        "actions@github.com",
        "github-actions[bot]",
        "web-flow",
        "dependabot[bot]",
    }
)

BOT_LOGIN_SUFFIX = "[bot]"


class CommitFilter:
    """Decides which commits count as the user's own work.

    A commit is excluded when it looks automated and is not owned by the user. Ownership (the exact username or one of
    the user's verified emails) is the only thing that overrides the automation check.
    """

    def __init__(self, username: str, verified_emails: Sequence[str] | None = None):
        self.username = username
        self.verified_emails: frozenset[str] = frozenset(email.lower() for email in verified_emails or [])

    def is_automated(self, commit: CommitRecord) -> bool:
        if commit.author_email and commit.author_email.lower() in AUTOMATION_IDENTITIES:
            return True

        if commit.author_login and (commit.author_login in AUTOMATION_IDENTITIES or commit.author_login.endswith(BOT_LOGIN_SUFFIX)):
            return True

        return False

    def is_owned_by_user(self, commit: CommitRecord) -> bool:
        if commit.author_login is not None and commit.author_login == self.username:
            return True

        return commit.author_email is not None and commit.author_email.lower() in self.verified_emails

    def excludes(self, commit: CommitRecord) -> bool:
        return self.is_automated(commit) and not self.is_owned_by_user(commit)

    def filter(self, commits: Sequence[CommitRecord]) -> list[CommitRecord]:
        return [commit for commit in commits if not self.excludes(commit)]


def batched(items: Sequence[T], size: int) -> list[Sequence[T]]:
    return [items[start : start + size] for start in range(0, len(items), size)]


class CommitWalker:
    commit_client: GitHubCommitClient
    commit_filter: CommitFilter
    batch_size: int
    logger: Logger

    def __init__(
        self,
        commit_client: GitHubCommitClient,
        commit_filter: CommitFilter,
        batch_size: int = DETAIL_BATCH_SIZE,
        per_page: int = DEFAULT_PER_PAGE,
        cancellation_token: CancellationToken | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: Logger | None = None,
    ):
        self.commit_client = commit_client
        self.commit_filter = commit_filter
        self.batch_size = batch_size
        self.per_page = per_page
        self.cancellation_token = cancellation_token or CancellationToken()
        self._sleep = sleep or asyncio.sleep
        self.logger = logger or get_logger(name=__name__)

    async def with_rate_limit_retry(self, action: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run the operation, and if it is rate limited wait for the reset and run it exactly once more.

        The wait never outlasts the run's deadline, and a cancelled run is not retried.
        """

        try:
            return await operation()
        except RateLimitedError as e:
            retry_after: float = e.retry_after()

            self.cancellation_token.raise_if_cancelled()

            if (remaining_seconds := self.cancellation_token.remaining_seconds()) is not None:
                retry_after = min(retry_after, remaining_seconds)

            self.logger.warning(f"Rate limit exceeded during {action}, waiting {retry_after:.0f}s before retrying once")

            await self._sleep(retry_after)

        self.cancellation_token.raise_if_cancelled()

        return await operation()

    async def _list_all_commits(self, repository: Repository, since: datetime | None) -> list[CommitRecord]:
        commits: list[CommitRecord] = []
        page: int = 1

        while True:
            page_of_commits = await self.commit_client.list_commits(
                owner=repository.owner,
                repo=repository.name,
                author=self.commit_filter.username,
                since=since,
                page=page,
                per_page=self.per_page,
            )
            commits.extend(page_of_commits)

            if len(page_of_commits) < self.per_page:
                return commits

            page += 1

    async def list_commits(self, repository: Repository, since: datetime | None = None) -> list[CommitRecord]:
        """List the user's qualifying commits in the repository.

        Raises:
            RequestError: If listing fails, including a second rate limit after waiting once.
        """

        commits: list[CommitRecord] = await self.with_rate_limit_retry(
            action=f"listing commits of {repository.full_name}",
            operation=lambda: self._list_all_commits(repository=repository, since=since),
        )

        qualifying_commits: list[CommitRecord] = self.commit_filter.filter(commits)

        if qualifying_commits:
            self.logger.info(f"Found {len(qualifying_commits)} user commits in {repository.full_name}")

        return qualifying_commits

    async def fetch_detail(self, repository: Repository, commit: CommitRecord) -> CommitRecord:
        """Fetch the commit again with its diff statistics."""

        detailed_commit: CommitRecord = await self.with_rate_limit_retry(
            action=f"fetching commit {commit.sha[:7]} of {repository.full_name}",
            operation=lambda: self.commit_client.get_commit(owner=repository.owner, repo=repository.name, sha=commit.sha),
        )

        return commit.with_diff_size(detailed_commit.diff_size)

    async def _fetch_batch(self, repository: Repository, batch: Sequence[CommitRecord]) -> list[CommitRecord]:
        results: list[CommitRecord | BaseException] = await asyncio.gather(
            *[self.fetch_detail(repository=repository, commit=commit) for commit in batch], return_exceptions=True
        )

        detailed_commits: list[CommitRecord] = []

        for commit, result in zip(batch, results, strict=True):
            if isinstance(result, CommitRecord):
                detailed_commits.append(result)
                continue

            if not isinstance(result, RequestError):
                raise result

            self.logger.warning(f"Failed to get detailed commit info for {commit.sha[:7]} of {repository.full_name}: {result}")

            detailed_commits.append(commit)

        return detailed_commits

    async def iter_detailed_batches(
        self,
        repository: Repository,
        commits: Sequence[CommitRecord],
        cancellation_token: CancellationToken | None = None,
    ) -> AsyncIterator[list[CommitRecord]]:
        """Yield the commits with their diff statistics, one batch at a time.

        Commits whose statistics cannot be fetched are yielded without them.
        """

        cancellation_token = cancellation_token or self.cancellation_token

        for batch in batched(commits, self.batch_size):
            cancellation_token.raise_if_cancelled()

            yield await self._fetch_batch(repository=repository, batch=batch)
