import json

from medibook.services.reconciliation.report import (
    SKIP_INVALID_TRANSITION,
    AffectedBooking,
    MigrationStats,
    SyncRunStats,
)


def _affected(booking_id, appointment_date):
    return AffectedBooking(
        booking_id=booking_id,
        external_appointment_id=f"ext-{booking_id}",
        appointment_date=appointment_date,
        examinee_name="Jane Doe",
    )


def test_affected_bookings_sorted_by_date_then_id():
    stats = SyncRunStats(mode="cancellation")
    stats.affected.extend(
        [
            _affected("b-2", "2025-10-07"),
            _affected("b-9", "2025-10-05"),
            _affected("b-1", "2025-10-07"),
        ]
    )

    assert [item.booking_id for item in stats.sorted_affected()] == ["b-9", "b-1", "b-2"]
    report = stats.render_report()
    assert report.index("booking=b-9") < report.index("booking=b-1") < report.index("booking=b-2")


def test_report_sections():
    stats = SyncRunStats(
        mode="cancellation",
        start_date="2025-10-01",
        end_date="2025-10-31",
        fetched=4,
        matched=3,
        not_found=1,
        already_in_target_state=1,
        updated=1,
        api_calls=1,
    )
    stats.skip(SKIP_INVALID_TRANSITION)
    stats.fail("A7", "database hiccup")

    report = stats.render_report()

    assert report.startswith("Cancellation sync report")
    assert "Date range: 2025-10-01 to 2025-10-31" in report
    assert "  Fetched from provider: 4" in report
    assert "  Not found locally: 1" in report
    assert "  Updated: 1" in report
    assert "  Skipped (invalidTransition): 1" in report
    assert "  Calls: 1" in report
    assert "  - A7: database hiccup" in report
    assert "DRY RUN" not in report


def test_dry_run_wording():
    stats = SyncRunStats(mode="reschedule", dry_run=True, updated=2)
    report = stats.render_report()
    assert "Mode: DRY RUN (no changes written)" in report
    assert "  Would update: 2" in report
    assert "Would update bookings (0):" in report


def test_summaries_serialize_to_json():
    stats = SyncRunStats(mode="cancellation")
    stats.affected.append(_affected("b-1", "2025-10-05"))
    stats.skip(SKIP_INVALID_TRANSITION)

    payload = json.loads(json.dumps(stats.as_dict()))
    assert payload["skip_reasons"] == {"invalidTransition": 1}
    assert payload["affected"][0]["booking_id"] == "b-1"

    migration = MigrationStats(test_mode=True)
    migration.bookings.fail("book-x", "boom")
    migration_payload = json.loads(json.dumps(migration.as_dict()))
    assert migration_payload["phases"]["bookings"]["skip_reasons"] == {"otherError": 1}
    assert migration_payload["phases"]["bookings"]["skipped"] == 1
