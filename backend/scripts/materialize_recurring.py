#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from app.config import EVENTS_DB_PATH, RECURRING_TOPUP_BUFFER_DAYS  # noqa: E402
from app.services.event_store import EventStore  # noqa: E402
from app.services.materializer import InstanceMaterializer  # noqa: E402
from app.timeutils import as_utc, utc_now  # noqa: E402


def run_top_up(db_path: str, buffer_days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    store = EventStore(db_path=db_path)
    materializer = InstanceMaterializer(store=store, buffer_days=buffer_days)
    started_at = now or utc_now()
    created = materializer.top_up(now=started_at)
    return {
        "db_path": db_path,
        "now": started_at.isoformat(),
        "buffer_days": buffer_days,
        "templates_topped_up": len(created),
        "instances_created": sum(created.values()),
        "per_template": created,
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Materialize upcoming instances of recurring events.")
    parser.add_argument("--db-path", default=EVENTS_DB_PATH, help="sqlite file holding events")
    parser.add_argument(
        "--buffer-days",
        type=int,
        default=RECURRING_TOPUP_BUFFER_DAYS,
        help="look-ahead window to keep materialized (default: %(default)s)",
    )
    parser.add_argument("--now", default=None, help="ISO timestamp to use instead of the current time")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    if args.buffer_days < 1:
        parser.error("--buffer-days must be positive")
    now = as_utc(datetime.fromisoformat(args.now)) if args.now else None

    report = run_top_up(args.db_path, args.buffer_days, now=now)
    print(json.dumps(report, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
