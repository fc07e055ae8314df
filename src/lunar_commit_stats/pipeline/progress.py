"""Progress reporting for analysis runs.

A run publishes `ProgressSnapshot`s through a `ProgressPublisher`. The publisher hands each snapshot to a
`ProgressChannel` without waiting for anyone to read it; an observer drains the channel at its own pace, for instance as
newline-delimited JSON frames. A publisher without a channel drops every snapshot.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Self

from pydantic import Field

from lunar_commit_stats.models.stats import CommitStats, PartialStats, StatsModel

DEFAULT_COMMIT_CADENCE = 5


class ProgressDetail(StatsModel):
    current: int = Field(description="Units of work done.")
    total: int = Field(description="Units of work in total.")
    percentage: int = Field(description="Share of the work done, 0 to 100.")
    stats: PartialStats | None = Field(default=None, description="The counts accumulated so far.")

    @classmethod
    def build(cls, current: int, total: int, stats: CommitStats | None = None) -> Self:
        percentage: int = round(current / total * 100) if total else 0

        return cls(
            current=current,
            total=total,
            percentage=percentage,
            stats=PartialStats.from_stats(stats) if stats is not None else None,
        )


class ProgressSnapshot(StatsModel):
    message: str = Field(description="Human-readable status.")
    progress: ProgressDetail | None = Field(default=None, description="How far along the run is.")

    def to_frame(self) -> str:
        """Encode the snapshot as one newline-terminated JSON frame."""

        return self.model_dump_json(by_alias=True, exclude_none=True) + "\n"


class ProgressChannel:
    """An unbounded, single-consumer queue of snapshots scoped to one run."""

    def __init__(self):
        self._queue: asyncio.Queue[ProgressSnapshot | None] = asyncio.Queue()
        self._closed: bool = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, snapshot: ProgressSnapshot) -> None:
        if self._closed:
            return

        self._queue.put_nowait(snapshot)

    def close(self) -> None:
        if self._closed:
            return

        self._closed = True
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[ProgressSnapshot]:
        while (snapshot := await self._queue.get()) is not None:
            yield snapshot

    async def frames(self) -> AsyncIterator[str]:
        async for snapshot in self:
            yield snapshot.to_frame()


class ProgressPublisher:
    channel: ProgressChannel | None
    commit_cadence: int

    def __init__(self, channel: ProgressChannel | None = None, commit_cadence: int = DEFAULT_COMMIT_CADENCE):
        self.channel = channel
        self.commit_cadence = commit_cadence
        self.published: int = 0

    def publish(self, message: str, progress: ProgressDetail | None = None) -> ProgressSnapshot | None:
        """Send a snapshot to the observer, if there is one. Never blocks."""

        if self.channel is None or self.channel.closed:
            return None

        snapshot = ProgressSnapshot(message=message, progress=progress)

        self.channel.send(snapshot)
        self.published += 1

        return snapshot

    def is_commit_checkpoint(self, processed_commits: int) -> bool:
        return processed_commits > 0 and processed_commits % self.commit_cadence == 0
