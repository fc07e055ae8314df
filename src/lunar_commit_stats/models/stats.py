"""Commit statistics accumulated over one analysis run.

`fold` adds one commit to a `CommitStats` accumulator and `finalize` turns the per-phase size sums into averages. The
accumulator is owned by a single run; averages are only meaningful once `finalized` is set.
"""

import math
from datetime import datetime, tzinfo
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from lunar_commit_stats.clients.models.github import CommitRecord
from lunar_commit_stats.lunar.phases import LUNAR_PHASES, PhaseLabel, TimeOfDayBucket, classify_phase, classify_time_of_day


class StatsModel(BaseModel):
    """Serializes with camelCase keys, accepts either casing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _zero_phase_counts() -> dict[PhaseLabel, int]:
    return dict.fromkeys(PhaseLabel, 0)


def _zero_time_of_day_counts() -> dict[TimeOfDayBucket, int]:
    return dict.fromkeys(TimeOfDayBucket, 0)


class LargestCommit(StatsModel):
    """The commit with the most changed lines."""

    phase: PhaseLabel | None = Field(default=None, description="The phase the commit was made in.")
    size: int = Field(default=0, description="Lines added plus lines removed.")
    message: str = Field(default="", description="The commit message.")
    timestamp: datetime | None = Field(default=None, alias="date", description="When the commit was authored.")


class CommitStats(StatsModel):
    commits_by_phase: dict[PhaseLabel, int] = Field(default_factory=_zero_phase_counts)
    average_commit_size: dict[PhaseLabel, int] = Field(
        default_factory=dict,
        description="Per phase, the running sum of changed lines until finalized, the rounded average afterwards.",
    )
    time_of_day: dict[TimeOfDayBucket, int] = Field(default_factory=_zero_time_of_day_counts)
    largest_commit: LargestCommit = Field(default_factory=LargestCommit)
    total_additions: int = Field(default=0)
    total_deletions: int = Field(default=0)
    finalized: bool = Field(default=False, description="Whether the averages have been computed.")

    @property
    def total_commits(self) -> int:
        return sum(self.commits_by_phase.values())

    def dominant_phase(self) -> PhaseLabel | None:
        """The phase with the most commits. Ties go to the earlier phase in the cycle."""

        if self.total_commits == 0:
            return None

        return max((phase_info.name for phase_info in LUNAR_PHASES), key=lambda phase: self.commits_by_phase.get(phase, 0))


class PartialStats(StatsModel):
    """The part of the accumulator that is meaningful mid-run."""

    commits_by_phase: dict[PhaseLabel, int]
    time_of_day: dict[TimeOfDayBucket, int]
    total_commits: int

    @classmethod
    def from_stats(cls, stats: CommitStats) -> Self:
        return cls(
            commits_by_phase=dict(stats.commits_by_phase),
            time_of_day=dict(stats.time_of_day),
            total_commits=stats.total_commits,
        )


def fold(commit: CommitRecord, stats: CommitStats, tz: tzinfo | None = None) -> CommitStats:
    """Add a commit to the accumulator, updating it in place, and return it.

    Raises:
        ValueError: If the accumulator has already been finalized.
    """

    if stats.finalized:
        msg = "Cannot fold a commit into finalized stats"
        raise ValueError(msg)

    phase: PhaseLabel = classify_phase(commit.timestamp)
    bucket: TimeOfDayBucket = classify_time_of_day(commit.timestamp, tz=tz)

    stats.commits_by_phase[phase] = stats.commits_by_phase.get(phase, 0) + 1
    stats.time_of_day[bucket] = stats.time_of_day.get(bucket, 0) + 1

    if (diff_size := commit.diff_size) is None:
        return stats

    stats.average_commit_size[phase] = stats.average_commit_size.get(phase, 0) + diff_size.total
    stats.total_additions += diff_size.additions
    stats.total_deletions += diff_size.deletions

    # Strictly greater, so the first of several equally large commits is kept.
    if diff_size.total > stats.largest_commit.size:
        stats.largest_commit = LargestCommit(phase=phase, size=diff_size.total, message=commit.message, timestamp=commit.timestamp)

    return stats


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def finalize(stats: CommitStats) -> CommitStats:
    """Return a copy of the stats with per-phase size sums turned into rounded averages.

    Finalizing already finalized stats returns them unchanged.
    """

    if stats.finalized:
        return stats

    averages: dict[PhaseLabel, int] = {
        phase: _round_half_up(size_sum / (stats.commits_by_phase.get(phase) or 1)) for phase, size_sum in stats.average_commit_size.items()
    }

    return stats.model_copy(update={"average_commit_size": averages, "finalized": True}, deep=True)
