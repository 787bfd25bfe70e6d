from __future__ import annotations

from medibook.scripts.sync_cli import run_sync_cli
from medibook.services.reconciliation.reschedule_sync import sync_rescheduled_bookings


def main(argv: list[str] | None = None) -> int:
    return run_sync_cli(
        argv,
        mode="reschedule",
        description="Move local bookings to their current provider appointment times.",
        sync=sync_rescheduled_bookings,
    )


if __name__ == "__main__":
    raise SystemExit(main())
