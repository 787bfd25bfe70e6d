from __future__ import annotations

import argparse
import json
import os
import re
import sys
from datetime import date
from typing import Callable

from medibook.core.encryption import get_field_codec
from medibook.core.settings import configure_logging, settings
from medibook.db.session import SessionLocal
from medibook.services.reconciliation.acuity_client import AcuityClient
from medibook.services.reconciliation.report import SyncRunStats

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2

_DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


class DateRangeError(ValueError):
    pass


def parse_date(value: str, *, label: str) -> date:
    raw = value.strip()
    match = _DATE_PATTERN.match(raw)
    if not match:
        raise DateRangeError(
            f"Invalid {label} format: {raw!r}. Expected YYYY-MM-DD (e.g. 2025-10-01)"
        )
    year = int(match.group(1))
    if year < 2000 or year > 2100:
        raise DateRangeError(f"Invalid year in {label}: {year}. Must be between 2000 and 2100")
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise DateRangeError(f"Invalid {label}: {raw} ({exc})") from exc


def resolve_date_range(
    start_raw: str | None,
    end_raw: str | None,
    *,
    prompt: Callable[[str], str] | None = None,
) -> tuple[date, date]:
    prompt = prompt or input
    if not start_raw:
        start_raw = prompt("Start date (YYYY-MM-DD): ")
    start = parse_date(start_raw, label="start date")
    if not end_raw:
        end_raw = prompt("End date (YYYY-MM-DD): ")
    end = parse_date(end_raw, label="end date")
    if end < start:
        raise DateRangeError(
            f"End date ({end.isoformat()}) must be after or equal to start date "
            f"({start.isoformat()})"
        )
    return start, end


def build_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument(
        "--start-date",
        default=os.getenv("START_DATE"),
        help="First provider date to fetch (YYYY-MM-DD). Prompted when omitted.",
    )
    parser.add_argument(
        "--end-date",
        default=os.getenv("END_DATE"),
        help="Last provider date to fetch (YYYY-MM-DD, inclusive). Prompted when omitted.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=os.getenv("DRY_RUN", "").strip().lower() == "true",
        help="Report what would change without writing to the database.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL for this run.",
    )
    return parser


def build_provider(stats: SyncRunStats) -> AcuityClient:
    return AcuityClient.from_settings(settings, stats=stats)


def run_sync_cli(
    argv: list[str] | None,
    *,
    mode: str,
    description: str,
    sync: Callable[..., SyncRunStats],
) -> int:
    parser = build_parser(description)
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        start, end = resolve_date_range(args.start_date, args.end_date)
    except (DateRangeError, EOFError) as exc:
        print(f"Error: {str(exc) or 'no date range provided'}", file=sys.stderr)
        return EXIT_USAGE

    stats = SyncRunStats(mode=mode)
    try:
        codec = get_field_codec()
        provider = build_provider(stats)
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL

    session = SessionLocal()
    try:
        sync(session, provider, start, end, dry_run=args.dry_run, codec=codec, stats=stats)
    finally:
        session.close()
        provider.close()

    print(stats.render_report())
    print(json.dumps(stats.as_dict(), indent=2, sort_keys=True))
    if stats.fatal_error:
        return EXIT_FATAL
    return EXIT_OK
