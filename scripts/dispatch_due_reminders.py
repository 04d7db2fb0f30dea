#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from booking_reminders.config import Settings, get_settings  # noqa: E402
from booking_reminders.engine import create_reminder_engine  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one reminder dispatch tick against the configured store and print the summary as JSON."
    )
    parser.add_argument(
        "--now",
        default=None,
        help="Evaluate the due predicate at this ISO 8601 instant instead of the current time",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="Override REMINDER_DISPATCH_BATCH_SIZE")
    parser.add_argument("--verbose", action="store_true", help="Log each dispatch step at INFO level")
    return parser.parse_args()


def parse_utc_datetime(raw: str) -> datetime:
    value = raw.strip()
    if value.endswith("Z"):
        value = f"{value[:-1]}+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    settings = get_settings()
    if args.batch_size is not None:
        if args.batch_size < 1:
            raise SystemExit("--batch-size must be at least 1")
        settings = Settings(**{**settings.__dict__, "dispatch_batch_size": args.batch_size})

    engine = create_reminder_engine(settings)
    now = parse_utc_datetime(args.now) if args.now else None
    summary = engine.dispatcher.dispatch_due(now=now)
    print(json.dumps(summary.model_dump(), indent=2))
    return 1 if summary.error else 0


if __name__ == "__main__":
    raise SystemExit(main())
