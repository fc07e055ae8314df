from datetime import UTC, datetime

ExtraInfoType = dict[str, str | None]


class ClientError(Exception):
    """An error from the Lunar Commit Stats client."""

    def __init__(self, message: str, extra_info: ExtraInfoType | None = None):
        msg = message
        if extra_info:
            msg += " (" + ", ".join([f"{key}: {value}" for key, value in extra_info.items() if value is not None]) + ")"
        super().__init__(msg)


class AuthenticationMissingError(ClientError):
    """No access token is available for the GitHub API."""

    def __init__(self, message: str = "A GitHub access token is required to analyze commits."):
        super().__init__(message=message)


class RequestError(ClientError):
    """A request error from the Lunar Commit Stats client."""

    status_code: int | None

    def __init__(self, action: str, message: str | None = None, extra_info: ExtraInfoType | None = None, status_code: int | None = None):
        if not extra_info:
            extra_info = {}
        self.status_code = status_code
        super().__init__(message="A request error occured.", extra_info={"action": action, "message": message, **extra_info})


class ResourceNotFoundError(RequestError):
    """The resource does not exist or the token cannot see it."""

    def __init__(self, action: str, resource: str | None = None, extra_info: ExtraInfoType | None = None):
        if not extra_info:
            extra_info = {}
        super().__init__(
            action=action,
            message="The resource could not be found.",
            extra_info={"resource": resource, **extra_info},
            status_code=404,
        )


class ResourceConflictError(RequestError):
    """The resource is in a state that cannot serve the request, e.g. an empty repository."""

    def __init__(self, action: str, resource: str | None = None):
        super().__init__(action=action, message="The resource is empty or in conflict.", extra_info={"resource": resource}, status_code=409)


class AuthenticationRejectedError(RequestError):
    """The remote rejected the access token."""

    def __init__(self, action: str):
        super().__init__(action=action, message="The access token was rejected.", status_code=401)


class RateLimitedError(RequestError):
    """The remote refused the request because the rate limit is exhausted."""

    reset_at: datetime | None

    def __init__(self, action: str, reset_at: datetime | None = None, status_code: int = 403):
        self.reset_at = reset_at
        super().__init__(
            action=action,
            message="The rate limit has been exceeded.",
            extra_info={"reset_at": reset_at.isoformat() if reset_at else None},
            status_code=status_code,
        )

    def retry_after(self, now: datetime | None = None) -> float:
        """Seconds until the rate limit resets, never negative."""

        if self.reset_at is None:
            return 0.0

        now = now or datetime.now(tz=UTC)

        return max(0.0, (self.reset_at - now).total_seconds())


class TransientRemoteError(RequestError):
    """Any other failure talking to the remote, including transport errors and timeouts."""


class PersistenceError(ClientError):
    """Reading or writing the result store failed."""

    def __init__(self, action: str, message: str | None = None):
        super().__init__(message="A persistence error occured.", extra_info={"action": action, "message": message})
