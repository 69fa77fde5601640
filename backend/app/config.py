import os
from pathlib import Path
from typing import List


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def parse_csv_env(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "events.sqlite3")
EVENTS_DB_PATH = os.getenv("EVENTS_DB_PATH", DEFAULT_DB_PATH)

RECURRING_MAX_INSTANCES = _int_env("RECURRING_MAX_INSTANCES", 100)
RECURRING_DEFAULT_HORIZON_MONTHS = _int_env("RECURRING_DEFAULT_HORIZON_MONTHS", 3)
RECURRING_TOPUP_BUFFER_DAYS = _int_env("RECURRING_TOPUP_BUFFER_DAYS", 30)
RECURRING_PREVIEW_DAYS = _int_env("RECURRING_PREVIEW_DAYS", 30)
RECURRING_MAX_END_DAYS = _int_env("RECURRING_MAX_END_DAYS", 365 * 2)

INSTANCES_DEFAULT_DAYS_AHEAD = _int_env("INSTANCES_DEFAULT_DAYS_AHEAD", 60)
INSTANCES_MAX_DAYS_AHEAD = _int_env("INSTANCES_MAX_DAYS_AHEAD", 365)
INSTANCES_MAX_PAGE_SIZE = _int_env("INSTANCES_MAX_PAGE_SIZE", 100)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
