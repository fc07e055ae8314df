from datetime import UTC, datetime, timedelta

from lunar_commit_stats.clients.errors.github import (
    AuthenticationMissingError,
    AuthenticationRejectedError,
    RateLimitedError,
    TransientRemoteError,
)
from lunar_commit_stats.utilities.formatting import format_error, format_rate_limit_error

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def test_rate_limit_rounds_minutes_up():
    error = RateLimitedError(action="List commits", reset_at=NOW + timedelta(seconds=90))

    assert format_rate_limit_error(error, now=NOW, tz=UTC) == "Rate limit exceeded. You can try again in 2 minutes (at 12:01:30)"


def test_rate_limit_single_minute():
    error = RateLimitedError(action="List commits", reset_at=NOW + timedelta(seconds=60))

    assert format_rate_limit_error(error, now=NOW, tz=UTC) == "Rate limit exceeded. You can try again in 1 minute (at 12:01:00)"


def test_rate_limit_already_reset():
    past_error = RateLimitedError(action="List commits", reset_at=NOW - timedelta(seconds=5))
    unknown_error = RateLimitedError(action="List commits")

    assert format_rate_limit_error(past_error, now=NOW) == "Rate limit exceeded. You can try again now"
    assert format_rate_limit_error(unknown_error, now=NOW) == "Rate limit exceeded. You can try again now"


def test_format_error():
    assert format_error(AuthenticationMissingError()) == "Not signed in to GitHub. Set GITHUB_TOKEN to analyze your commits."
    assert format_error(AuthenticationRejectedError(action="Get authenticated user")).startswith("GitHub rejected the access token.")
    assert format_error(RateLimitedError(action="List commits", reset_at=NOW), now=NOW) == "Rate limit exceeded. You can try again now"
    assert format_error(TransientRemoteError(action="List commits", message="502: Bad Gateway")) == (
        "A request error occured. (action: List commits, message: 502: Bad Gateway)"
    )
    assert format_error(RuntimeError()) == "RuntimeError"
