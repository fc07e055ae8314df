import re
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
from fastmcp import FastMCP
from fastmcp.server.middleware.logging import LoggingMiddleware

from lunar_commit_stats.clients.github import GitHubCommitClient, get_httpx_client
from lunar_commit_stats.clients.rate_limiter import AdaptiveRateLimiter

START_EPOCH_SECONDS = 1_700_000_000.0

TEST_API_URL = "https://api.github.test"

USERNAME = "octocat"

# One timestamp per phase, each well inside its phase window. Times of day are UTC.
NEW_MOON_AT = "2000-01-01T00:00:00Z"
WAXING_CRESCENT_AT = "2000-01-04T12:00:00Z"
FIRST_QUARTER_AT = "2000-01-08T09:00:00Z"
WAXING_GIBBOUS_AT = "2000-01-12T00:00:00Z"
FULL_MOON_AT = "2000-01-15T18:00:00Z"
WANING_GIBBOUS_AT = "2000-01-19T12:00:00Z"
LAST_QUARTER_AT = "2000-01-23T03:00:00Z"
WANING_CRESCENT_AT = "2000-01-26T20:00:00Z"


class FakeClock:
    """Epoch seconds that only move when something sleeps."""

    def __init__(self, now: float = START_EPOCH_SECONDS):
        self.now = now
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def repository_payload(name: str, owner: str = USERNAME, fork: bool = False) -> dict[str, Any]:
    return {"owner": {"login": owner}, "name": name, "fork": fork, "private": False, "default_branch": "main"}


def commit_payload(
    sha: str, date: str, login: str | None = USERNAME, email: str | None = "octocat@example.com", message: str = "Update"
) -> dict[str, Any]:
    return {
        "sha": sha,
        "commit": {"author": {"name": login or "Someone", "email": email, "date": date}, "message": message},
        "author": {"login": login} if login else None,
    }


def spaced_commit_payloads(count: int, start: str = NEW_MOON_AT, prefix: str = "c") -> list[dict[str, Any]]:
    start_at: datetime = datetime.fromisoformat(start)
    return [
        commit_payload(sha=f"{prefix}{index:03d}", date=(start_at + timedelta(hours=index)).isoformat().replace("+00:00", "Z"))
        for index in range(count)
    ]


def rate_limit_response(status_code: int = 403, reset_in_seconds: int = 60) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={"message": "API rate limit exceeded"},
        headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": str(int(datetime.now(tz=UTC).timestamp()) + reset_in_seconds)},
    )


class FakeGitHub:
    """Serves the handful of REST endpoints the client uses from in-memory data."""

    def __init__(self, clock: FakeClock, login: str = USERNAME):
        self.clock = clock
        self.login = login
        self.emails: list[dict[str, Any]] = [{"email": "octocat@example.com", "verified": True, "primary": True}]
        self.repositories: list[dict[str, Any]] = []
        self.commits: dict[str, list[dict[str, Any]]] = {}
        self.stats: dict[str, dict[str, int]] = {}
        self.failures: dict[str, list[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add_repository(self, name: str, commits: list[dict[str, Any]] | None = None, fork: bool = False) -> None:
        self.repositories.append(repository_payload(name=name, owner=self.login, fork=fork))
        self.commits[f"{self.login}/{name}"] = commits or []

    def fail(self, path: str, *responses: httpx.Response) -> None:
        self.failures.setdefault(path, []).extend(responses)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    def _ok(self, body: Any) -> httpx.Response:
        return httpx.Response(
            200,
            json=body,
            headers={"x-ratelimit-remaining": "4999", "x-ratelimit-reset": str(int(self.clock.now) + 3600)},
        )

    @staticmethod
    def _page(items: list[dict[str, Any]], request: httpx.Request) -> list[dict[str, Any]]:
        page = int(request.url.params.get("page", "1"))
        per_page = int(request.url.params.get("per_page", "30"))
        return items[(page - 1) * per_page : page * per_page]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path: str = request.url.path

        if failures := self.failures.get(path):
            return failures.pop(0)

        if path == "/user":
            return self._ok({"login": self.login, "name": "The Octocat", "email": None})

        if path == "/user/emails":
            return self._ok(self.emails)

        if path == "/user/repos":
            return self._ok(self._page(self.repositories, request))

        if match := re.fullmatch(r"/repos/([^/]+)/([^/]+)/commits", path):
            return self._ok(self._page(self.commits.get(f"{match[1]}/{match[2]}", []), request))

        if match := re.fullmatch(r"/repos/([^/]+)/([^/]+)/commits/([^/]+)", path):
            for commit in self.commits.get(f"{match[1]}/{match[2]}", []):
                if commit["sha"] == match[3]:
                    return self._ok({**commit, "stats": self.stats.get(commit["sha"])})

        return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_github(fake_clock: FakeClock) -> FakeGitHub:
    return FakeGitHub(clock=fake_clock)


@pytest.fixture
def rate_limiter(fake_clock: FakeClock) -> AdaptiveRateLimiter:
    return AdaptiveRateLimiter(clock=fake_clock.time, sleep=fake_clock.sleep)


@pytest.fixture
async def commit_client(fake_github: FakeGitHub, rate_limiter: AdaptiveRateLimiter) -> AsyncGenerator[GitHubCommitClient, Any]:
    http_client: httpx.AsyncClient = get_httpx_client(
        token="test-token",  # noqa: S106
        base_url=TEST_API_URL,
        transport=httpx.MockTransport(fake_github.handler),
    )

    async with GitHubCommitClient(http_client=http_client, rate_limiter=rate_limiter) as client:
        yield client


@pytest.fixture
def fastmcp() -> FastMCP[Any]:
    return FastMCP(name="Lunar Commit Stats", middleware=[LoggingMiddleware(include_payloads=True)])
