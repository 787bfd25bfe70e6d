from __future__ import annotations

from medibook.scripts.sync_cli import run_sync_cli
from medibook.services.reconciliation.cancellation_sync import sync_canceled_bookings


def main(argv: list[str] | None = None) -> int:
    return run_sync_cli(
        argv,
        mode="cancellation",
        description="Close local bookings whose provider appointments were canceled.",
        sync=sync_canceled_bookings,
    )


if __name__ == "__main__":
    raise SystemExit(main())
