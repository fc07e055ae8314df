import os
from datetime import timedelta, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_LOOKBACK_DAYS = 365
DEFAULT_FRESHNESS_HOURS = 24
DEFAULT_RUN_TIMEOUT_SECONDS = 60 * 60
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30


def get_api_url() -> str:
    return os.getenv("GITHUB_API_URL", DEFAULT_API_URL)


def get_lookback_days() -> int:
    return int(os.getenv("LUNAR_STATS_LOOKBACK_DAYS", str(DEFAULT_LOOKBACK_DAYS)))


def get_timezone() -> tzinfo | None:
    """The zone used for time-of-day buckets. None means the host's local zone."""

    if not (timezone_name := os.getenv("LUNAR_STATS_TIMEZONE")):
        return None

    return ZoneInfo(timezone_name)


def get_freshness_window() -> timedelta:
    return timedelta(hours=float(os.getenv("LUNAR_STATS_FRESHNESS_HOURS", str(DEFAULT_FRESHNESS_HOURS))))


def get_run_timeout_seconds() -> float:
    return float(os.getenv("LUNAR_STATS_RUN_TIMEOUT_SECONDS", str(DEFAULT_RUN_TIMEOUT_SECONDS)))


def get_request_timeout_seconds() -> float:
    return float(os.getenv("LUNAR_STATS_REQUEST_TIMEOUT_SECONDS", str(DEFAULT_REQUEST_TIMEOUT_SECONDS)))


def get_db_path() -> Path | None:
    if not (db_path := os.getenv("LUNAR_STATS_DB_PATH")):
        return None

    return Path(db_path)
