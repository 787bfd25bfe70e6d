from __future__ import annotations

import argparse
import json
import sys

from medibook.core.encryption import get_field_codec
from medibook.core.settings import configure_logging, require_migration_settings, settings
from medibook.db.session import create_readonly_engine, create_session_factory
from medibook.services.reconciliation.legacy_source import SqlLegacySource
from medibook.services.reconciliation.migration import (
    PreconditionError,
    migrate_legacy_bookings,
)

EXIT_OK = 0
EXIT_FATAL = 1


def _resolve_settings(args: argparse.Namespace):
    overrides = {
        "legacy_database_url": args.legacy_database_url or settings.legacy_database_url,
        "database_url": args.database_url or settings.database_url,
        "default_organization_id": args.organization_id or settings.default_organization_id,
        "system_user_id": args.system_user_id or settings.system_user_id,
    }
    resolved = settings.model_copy(update=overrides)
    require_migration_settings(resolved)
    return resolved


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Migrate referrers, examinees, bookings and progress from the legacy database."
    )
    parser.add_argument(
        "--legacy-database-url",
        default=None,
        help="Legacy database URL (defaults to OLD_DATABASE_URL).",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Target database URL (defaults to DATABASE_URL).",
    )
    parser.add_argument(
        "--organization-id",
        default=None,
        help="Organization that owns migrated records (defaults to DEFAULT_ORGANIZATION_ID).",
    )
    parser.add_argument(
        "--system-user-id",
        default=None,
        help="User recorded as creator of migrated bookings (defaults to SYSTEM_USER_ID).",
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Migrate a single booking and its dependency chain.",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL for this run.")
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        resolved = _resolve_settings(args)
        codec = get_field_codec()
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL

    source = SqlLegacySource(create_readonly_engine(str(resolved.legacy_database_url)))
    session = create_session_factory(resolved.database_url)()
    try:
        stats = migrate_legacy_bookings(
            session,
            source,
            organization_id=str(resolved.default_organization_id),
            system_user_id=str(resolved.system_user_id),
            test_mode=args.test_mode,
            codec=codec,
        )
    except PreconditionError as exc:
        print(f"Precondition failed: {exc}", file=sys.stderr)
        return EXIT_FATAL
    finally:
        session.close()
        source.engine.dispose()

    print(stats.render_report())
    print(json.dumps(stats.as_dict(), indent=2, sort_keys=True))
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
