import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from logging import Logger
from typing import Any

import httpx
from fastmcp.utilities.logging import get_logger

from lunar_commit_stats.clients.errors.github import (
    AuthenticationMissingError,
    AuthenticationRejectedError,
    RateLimitedError,
    RequestError,
    ResourceConflictError,
    ResourceNotFoundError,
    TransientRemoteError,
)
from lunar_commit_stats.clients.models.github import AuthenticatedUser, CommitRecord, Repository, UserEmail
from lunar_commit_stats.clients.rate_limiter import RATE_LIMIT_REMAINING_HEADER, RATE_LIMIT_RESET_HEADER, AdaptiveRateLimiter
from lunar_commit_stats.utilities.settings import get_api_url, get_request_timeout_seconds

NOT_FOUND_ERROR = 404
CONFLICT_ERROR = 409
UNAUTHORIZED_ERROR = 401
FORBIDDEN_ERROR = 403
TOO_MANY_REQUESTS_ERROR = 429

RETRY_AFTER_HEADER = "retry-after"

GITHUB_API_VERSION = "2022-11-28"

DEFAULT_PER_PAGE = 100

REPOSITORY_AFFILIATION = "owner,collaborator,organization_member"


def get_github_token() -> str:
    env_vars: tuple[str, ...] = ("GITHUB_TOKEN", "GITHUB_PERSONAL_ACCESS_TOKEN")
    for env_var in env_vars:
        if token := os.environ.get(env_var):
            return token
    msg = "GITHUB_TOKEN or GITHUB_PERSONAL_ACCESS_TOKEN must be set"
    raise AuthenticationMissingError(msg)


def get_httpx_client(
    token: str | None = None,
    base_url: str | None = None,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Build an HTTP client authenticated against the GitHub REST API."""

    return httpx.AsyncClient(
        base_url=base_url or get_api_url(),
        headers={
            "Authorization": f"Bearer {token or get_github_token()}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
            "User-Agent": "lunar-commit-stats",
        },
        timeout=timeout or get_request_timeout_seconds(),
        transport=transport,
    )


def parse_reset_at(response: httpx.Response) -> datetime | None:
    """Work out when a rate limited request may be retried from the response headers."""

    # Secondary limits send retry-after, which is shorter than the primary reset.
    if retry_after := response.headers.get(RETRY_AFTER_HEADER):
        try:
            return datetime.now(tz=UTC) + timedelta(seconds=int(retry_after))
        except ValueError:
            pass

    if reset := response.headers.get(RATE_LIMIT_RESET_HEADER):
        try:
            return datetime.fromtimestamp(int(reset), tz=UTC)
        except ValueError:
            pass

    return None


def is_rate_limited(response: httpx.Response) -> bool:
    """A 403 is only a rate limit when the budget is spent or the remote asks us to back off.

    Other 403s (SAML enforcement, missing permissions) arrive with the same rate limit headers.
    """

    return response.headers.get(RATE_LIMIT_REMAINING_HEADER) == "0" or RETRY_AFTER_HEADER in response.headers


class GitHubCommitClient:
    http_client: httpx.AsyncClient
    rate_limiter: AdaptiveRateLimiter
    logger: Logger

    log_requests: bool
    log_responses: bool
    log_on_error: bool

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: AdaptiveRateLimiter | None = None,
        logger: Logger | None = None,
        log_requests: bool = True,
        log_responses: bool = False,
        log_on_error: bool = True,
    ):
        self.http_client = http_client or get_httpx_client()
        self.rate_limiter = rate_limiter or AdaptiveRateLimiter()
        self.logger = logger or get_logger(name=__name__)
        self.log_requests = log_requests
        self.log_responses = log_responses
        self.log_on_error = log_on_error

    async def __aenter__(self) -> "GitHubCommitClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http_client.aclose()

    def _get_loggers(
        self, log_request: bool | None = None, log_response: bool | None = None, log_on_error: bool | None = None
    ) -> tuple[Callable[[str], Any], Callable[[str], Any], Callable[[str], Any]]:
        request_logger = self.logger.info if log_request or self.log_requests else self.logger.debug
        response_logger = self.logger.info if log_response or self.log_responses else self.logger.debug
        error_logger = self.logger.exception if log_on_error or self.log_on_error else self.logger.debug
        return request_logger, response_logger, error_logger

    def _error_for_response(self, action: str, response: httpx.Response) -> RequestError:
        status_code: int = response.status_code

        if status_code == NOT_FOUND_ERROR:
            return ResourceNotFoundError(action=action, resource=response.request.url.path)

        if status_code == CONFLICT_ERROR:
            return ResourceConflictError(action=action, resource=response.request.url.path)

        if status_code == UNAUTHORIZED_ERROR:
            return AuthenticationRejectedError(action=action)

        if status_code == TOO_MANY_REQUESTS_ERROR or (status_code == FORBIDDEN_ERROR and is_rate_limited(response)):
            return RateLimitedError(action=action, reset_at=parse_reset_at(response), status_code=status_code)

        return TransientRemoteError(action=action, message=f"{status_code}: {response.text[:200]}", status_code=status_code)

    async def _perform_rest_request(
        self,
        action: str,
        path: str,
        params: dict[str, Any] | None = None,
        log_request: bool | None = None,
        log_response: bool | None = None,
        log_on_error: bool | None = None,
    ) -> Any:
        """Perform a GET request through the rate limiter and return the decoded body.

        Args:
            action: The action being performed.
            path: The API path to request.
            params: The query parameters.
            log_request: Whether to log the request.
            log_response: Whether to log the response.
            log_on_error: Whether to log on error.

        Raises:
            ResourceNotFoundError: If the resource is not found.
            ResourceConflictError: If the resource is empty or in conflict.
            AuthenticationRejectedError: If the token is rejected.
            RateLimitedError: If the rate limit is exhausted.
            TransientRemoteError: For any other failure.
        """

        request_logger, response_logger, error_logger = self._get_loggers(
            log_request=log_request, log_response=log_response, log_on_error=log_on_error
        )

        request_logger(f"Performing {action} on {path} with params {params}")

        try:
            response: httpx.Response = await self.rate_limiter.schedule(lambda: self.http_client.get(path, params=params))
        except httpx.HTTPError as e:
            error_logger(f"Transport error performing {action} on {path} with params {params}: {e}")

            raise TransientRemoteError(action=action, message=str(e)) from e

        if response.is_error:
            error: RequestError = self._error_for_response(action=action, response=response)

            # Missing and empty resources are routine while walking repositories.
            if not isinstance(error, ResourceNotFoundError | ResourceConflictError):
                error_logger(f"Error performing {action} on {path} with params {params}: {error}")

            raise error

        self.rate_limiter.update_from_headers(response.headers)

        try:
            body: Any = response.json()
        except ValueError as e:
            error_logger(f"Undecodable response performing {action} on {path} with params {params}: {response.text[:200]}")

            raise TransientRemoteError(action=action, message=f"The response was not valid JSON: {e}", status_code=response.status_code) from e

        response_logger(f"Completed {action} on {path} with params {params}: {body}")

        return body

    async def get_authenticated_user(self) -> AuthenticatedUser:
        """Get the user behind the access token."""

        user: dict[str, Any] = await self._perform_rest_request(action="Get authenticated user", path="/user")

        return AuthenticatedUser.from_user(user=user)

    async def list_verified_emails(self) -> list[str]:
        """List the verified email addresses of the authenticated user.

        Tokens without the email scope cannot see the list, in which case no addresses are returned.
        """

        try:
            emails: list[dict[str, Any]] = await self._perform_rest_request(
                action="List emails for authenticated user", path="/user/emails", params={"per_page": DEFAULT_PER_PAGE}
            )
        except ResourceNotFoundError:
            self.logger.warning("The access token cannot list email addresses, only the login will identify the user's commits")
            return []

        return [user_email.email for user_email in map(UserEmail.from_email, emails) if user_email.verified]

    async def list_repositories(self, page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> list[Repository]:
        """List one page of the repositories the authenticated user owns, collaborates on or sees through an organization."""

        repositories: list[dict[str, Any]] = await self._perform_rest_request(
            action="List repositories for authenticated user",
            path="/user/repos",
            params={
                "affiliation": REPOSITORY_AFFILIATION,
                "sort": "updated",
                "visibility": "all",
                "per_page": per_page,
                "page": page,
            },
        )

        return [Repository.from_repository(repository=repository) for repository in repositories]

    async def list_commits(
        self,
        owner: str,
        repo: str,
        author: str,
        since: datetime | None = None,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> list[CommitRecord]:
        """List one page of the commits on the default branch authored by the given user."""

        params: dict[str, Any] = {"author": author, "per_page": per_page, "page": page}

        if since is not None:
            params["since"] = since.astimezone(UTC).isoformat().replace("+00:00", "Z")

        commits: list[dict[str, Any]] = await self._perform_rest_request(
            action="List commits",
            path=f"/repos/{owner}/{repo}/commits",
            params=params,
            log_request=False,
        )

        return [CommitRecord.from_commit(commit=commit) for commit in commits]

    async def get_commit(self, owner: str, repo: str, sha: str) -> CommitRecord:
        """Get a single commit including its diff statistics."""

        commit: dict[str, Any] = await self._perform_rest_request(
            action="Get commit",
            path=f"/repos/{owner}/{repo}/commits/{sha}",
            log_request=False,
        )

        return CommitRecord.from_commit(commit=commit)
