from __future__ import annotations

import sys
from functools import partial

from medibook.core.settings import require_import_settings, settings
from medibook.scripts.sync_cli import EXIT_FATAL, run_sync_cli
from medibook.services.reconciliation.missing_appointments import import_missing_appointments


def main(argv: list[str] | None = None) -> int:
    try:
        organization_id, system_user_id = require_import_settings(settings)
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    return run_sync_cli(
        argv,
        mode="import",
        description=(
            "Import provider appointments that have no local booking. "
            "Use --dry-run to only list them."
        ),
        sync=partial(
            import_missing_appointments,
            organization_id=organization_id,
            system_user_id=system_user_id,
        ),
    )


if __name__ == "__main__":
    raise SystemExit(main())
