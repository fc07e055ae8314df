import math
from datetime import UTC, datetime, tzinfo

from lunar_commit_stats.clients.errors.github import AuthenticationMissingError, AuthenticationRejectedError, RateLimitedError


def format_rate_limit_error(error: RateLimitedError, now: datetime | None = None, tz: tzinfo | None = None) -> str:
    """Tell the user when they can try again after being rate limited."""

    now = now or datetime.now(tz=UTC)
    retry_after: float = error.retry_after(now=now)

    if error.reset_at is None or retry_after <= 0:
        return "Rate limit exceeded. You can try again now"

    minutes: int = math.ceil(retry_after / 60)
    reset_time: str = error.reset_at.astimezone(tz).strftime("%H:%M:%S")

    return f"Rate limit exceeded. You can try again in {minutes} minute{'' if minutes == 1 else 's'} (at {reset_time})"


def format_error(error: Exception, now: datetime | None = None, tz: tzinfo | None = None) -> str:
    """Turn an error that ended an analysis into a message for the user."""

    if isinstance(error, RateLimitedError):
        return format_rate_limit_error(error, now=now, tz=tz)

    if isinstance(error, AuthenticationMissingError):
        return "Not signed in to GitHub. Set GITHUB_TOKEN to analyze your commits."

    if isinstance(error, AuthenticationRejectedError):
        return "GitHub rejected the access token. Check that GITHUB_TOKEN is valid and has not expired."

    return str(error) or type(error).__name__
