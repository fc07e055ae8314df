from logging import Logger

from fastmcp.utilities.logging import get_logger

from lunar_commit_stats.clients.github import DEFAULT_PER_PAGE, GitHubCommitClient
from lunar_commit_stats.clients.models.github import Repository


class RepositoryEnumerator:
    """Lists every non-fork repository the authenticated user can access."""

    def __init__(self, commit_client: GitHubCommitClient, per_page: int = DEFAULT_PER_PAGE, logger: Logger | None = None):
        self.commit_client = commit_client
        self.per_page = per_page
        self.logger = logger or get_logger(name=__name__)

    async def list_repositories(self) -> list[Repository]:
        """Walk every page of the user's repositories and drop forks.

        Errors are not caught here: without the repository list there is nothing to analyze.
        """

        repositories: list[Repository] = []
        page: int = 1

        while True:
            page_of_repositories = await self.commit_client.list_repositories(page=page, per_page=self.per_page)
            repositories.extend(page_of_repositories)

            if len(page_of_repositories) < self.per_page:
                break

            page += 1

        non_fork_repositories = [repository for repository in repositories if not repository.fork]

        self.logger.info(f"Found {len(non_fork_repositories)} repositories to analyze ({len(repositories) - len(non_fork_repositories)} forks skipped)")

        return non_fork_repositories
