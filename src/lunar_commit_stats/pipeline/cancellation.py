import time
from collections.abc import Callable


class AnalysisCancelledError(Exception):
    """The analysis run was cancelled before it finished."""

    def __init__(self, message: str = "The analysis was cancelled."):
        super().__init__(message)


class AnalysisTimeoutError(AnalysisCancelledError):
    """The analysis run went past its deadline."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"The analysis did not finish within {timeout_seconds:.0f} seconds.")


class CancellationToken:
    """Signals a running analysis to stop at its next repository or batch boundary.

    A token may also carry a deadline, after which it reports itself as cancelled.
    """

    def __init__(self, timeout_seconds: float | None = None, clock: Callable[[], float] | None = None):
        self._clock = clock or time.monotonic
        self._cancelled = False
        self.reason: str | None = None
        self.timeout_seconds = timeout_seconds
        self.deadline: float | None = self._clock() + timeout_seconds if timeout_seconds is not None else None

    def cancel(self, reason: str | None = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def remaining_seconds(self) -> float | None:
        """Seconds left until the deadline, or None without one."""

        if self.deadline is None:
            return None

        return max(0.0, self.deadline - self._clock())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self.expired

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AnalysisCancelledError(self.reason or "The analysis was cancelled.")

        if self.expired and self.timeout_seconds is not None:
            raise AnalysisTimeoutError(timeout_seconds=self.timeout_seconds)
