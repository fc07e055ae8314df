ExtraInfoType = dict[str, str | None]


class ServerError(Exception):
    """A request error from the Lunar Commit Stats server."""

    def __init__(self, message: str, extra_info: ExtraInfoType | None = None):
        msg = message
        if extra_info:
            msg += " (" + ", ".join([f"{key}: {value}" for key, value in extra_info.items() if value is not None]) + ")"
        super().__init__(msg)


class AnalysisFailedError(ServerError):
    """The analysis could not be completed. The message is meant for the user."""


class NoCachedStatsError(ServerError):
    def __init__(self, username: str):
        super().__init__(message="No stats have been stored yet. Run `analyze_commits` first.", extra_info={"username": username})


class NoAnalysisProgressError(ServerError):
    def __init__(self, username: str):
        super().__init__(message="No analysis has been started yet.", extra_info={"username": username})
