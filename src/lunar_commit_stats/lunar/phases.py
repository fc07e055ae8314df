from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

# A new moon close to the turn of the millennium, used as the reference point for the cycle.
REFERENCE_NEW_MOON: datetime = datetime(2000, 1, 1, tzinfo=UTC)

SYNODIC_MONTH_DAYS: float = 29.53058867

MILLISECONDS_PER_DAY: int = 86_400_000


class PhaseLabel(StrEnum):
    NEW_MOON = "New Moon"
    WAXING_CRESCENT = "Waxing Crescent"
    FIRST_QUARTER = "First Quarter"
    WAXING_GIBBOUS = "Waxing Gibbous"
    FULL_MOON = "Full Moon"
    WANING_GIBBOUS = "Waning Gibbous"
    LAST_QUARTER = "Last Quarter"
    WANING_CRESCENT = "Waning Crescent"


class TimeOfDayBucket(StrEnum):
    DAWN = "dawn"
    DAY = "day"
    DUSK = "dusk"
    NIGHT = "night"


# Upper bounds (exclusive) of each phase window. Anything at or above the last bound wraps back to a new moon.
PHASE_BOUNDARIES: tuple[tuple[float, PhaseLabel], ...] = (
    (0.0625, PhaseLabel.NEW_MOON),
    (0.1875, PhaseLabel.WAXING_CRESCENT),
    (0.3125, PhaseLabel.FIRST_QUARTER),
    (0.4375, PhaseLabel.WAXING_GIBBOUS),
    (0.5625, PhaseLabel.FULL_MOON),
    (0.6875, PhaseLabel.WANING_GIBBOUS),
    (0.8125, PhaseLabel.LAST_QUARTER),
    (0.9375, PhaseLabel.WANING_CRESCENT),
)

# (start hour inclusive, end hour exclusive, bucket); night covers whatever is left and wraps midnight.
TIME_OF_DAY_RANGES: tuple[tuple[int, int, TimeOfDayBucket], ...] = (
    (4, 8, TimeOfDayBucket.DAWN),
    (8, 16, TimeOfDayBucket.DAY),
    (16, 20, TimeOfDayBucket.DUSK),
)


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=UTC)

    return timestamp


def phase_fraction(timestamp: datetime) -> float:
    """Position of the timestamp within the synodic cycle, in [0, 1). Naive timestamps are treated as UTC."""

    elapsed_ms: float = (_as_utc(timestamp) - REFERENCE_NEW_MOON) / timedelta(milliseconds=1)

    elapsed_days: float = elapsed_ms / MILLISECONDS_PER_DAY

    # Python's modulo is non-negative for a positive divisor, so dates before the reference still land in [0, 1).
    fraction: float = (elapsed_days / SYNODIC_MONTH_DAYS) % 1.0

    # Guard against a float remainder rounding up to exactly 1.0 for tiny negative inputs.
    return 0.0 if fraction >= 1.0 else fraction


def phase_from_fraction(fraction: float) -> PhaseLabel:
    for upper_bound, label in PHASE_BOUNDARIES:
        if fraction < upper_bound:
            return label

    return PhaseLabel.NEW_MOON


def classify_phase(timestamp: datetime) -> PhaseLabel:
    """Classify a timestamp into one of the eight moon phases."""

    return phase_from_fraction(phase_fraction(timestamp))


def bucket_from_hour(hour: int) -> TimeOfDayBucket:
    for start, end, bucket in TIME_OF_DAY_RANGES:
        if start <= hour < end:
            return bucket

    return TimeOfDayBucket.NIGHT


def classify_time_of_day(timestamp: datetime, tz: tzinfo | None = None) -> TimeOfDayBucket:
    """Classify a timestamp by its local hour. Without a zone the host's local zone is used."""

    local_timestamp: datetime = _as_utc(timestamp).astimezone(tz)

    return bucket_from_hour(local_timestamp.hour)


class PhaseInfo(BaseModel):
    """Presentation details for a moon phase."""

    model_config = ConfigDict(frozen=True)

    name: PhaseLabel = Field(description="The name of the phase.")
    symbol: str = Field(description="The emoji for the phase.")
    description: str = Field(description="A short description of the phase.")
    personality: str = Field(description="What committing mostly during this phase says about a developer.")


LUNAR_PHASES: tuple[PhaseInfo, ...] = (
    PhaseInfo(
        name=PhaseLabel.NEW_MOON,
        symbol="🌑",
        description="Time of new beginnings and fresh starts in your code",
        personality="You thrive on fresh starts and new projects. Your commits often mark the beginning of new features "
        "or major refactors, showing your innovative spirit.",
    ),
    PhaseInfo(
        name=PhaseLabel.WAXING_CRESCENT,
        symbol="🌒",
        description="Growing momentum in your development",
        personality="You're a momentum builder. Your coding patterns show steady growth and consistent progress, "
        "turning ideas into reality one commit at a time.",
    ),
    PhaseInfo(
        name=PhaseLabel.FIRST_QUARTER,
        symbol="🌓",
        description="Overcoming challenges and making progress",
        personality="You're at your best when pushing through challenges. Your commits often represent breakthrough "
        "moments and problem-solving victories.",
    ),
    PhaseInfo(
        name=PhaseLabel.WAXING_GIBBOUS,
        symbol="🌔",
        description="Building towards completion",
        personality="You're driven by the pursuit of completion. Your commit history reveals a developer who excels at "
        "bringing projects close to their final form.",
    ),
    PhaseInfo(
        name=PhaseLabel.FULL_MOON,
        symbol="🌕",
        description="Peak productivity and feature completion",
        personality="You're a peak performer. Your most active coding sessions align with moments of full clarity and "
        "maximum productivity.",
    ),
    PhaseInfo(
        name=PhaseLabel.WANING_GIBBOUS,
        symbol="🌖",
        description="Refining and polishing your code",
        personality="You're a perfectionist at heart. Your commits often focus on refinement and optimization, showing "
        "attention to detail and code quality.",
    ),
    PhaseInfo(
        name=PhaseLabel.LAST_QUARTER,
        symbol="🌗",
        description="Time for code review and reflection",
        personality="You're analytical and reflective. Your commit patterns suggest someone who values careful review "
        "and thoughtful iteration.",
    ),
    PhaseInfo(
        name=PhaseLabel.WANING_CRESCENT,
        symbol="🌘",
        description="Winding down and planning next steps",
        personality="You're a strategic planner. Your commits often come during quieter periods, focusing on "
        "preparation and groundwork for what's next.",
    ),
)


def get_phase_info(label: PhaseLabel) -> PhaseInfo:
    return next(phase_info for phase_info in LUNAR_PHASES if phase_info.name == label)
