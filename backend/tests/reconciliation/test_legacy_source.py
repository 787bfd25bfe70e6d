from datetime import datetime

from medibook.models.booking import Booking, BookingStatus
from medibook.services.reconciliation.legacy_source import SqlLegacySource
from medibook.services.reconciliation.migration import migrate_legacy_bookings


def test_specialists_expose_calendar_ids(legacy_engine):
    rows = SqlLegacySource(legacy_engine).list_specialists()
    assert [(row.id, row.external_calendar_id) for row in rows] == [
        ("old-spec-1", "100"),
        ("old-spec-2", "999"),
    ]


def test_bookings_are_renamed_to_current_columns(legacy_engine):
    bookings = SqlLegacySource(legacy_engine).list_bookings()

    assert [row.id for row in bookings] == ["book-a", "book-b"]
    first = bookings[0]
    assert first.external_appointment_id == "5001"
    assert first.external_calendar_id == "100"
    assert first.date_time == datetime(2024, 2, 1, 10, 0)
    assert first.status == "confirmed"
    assert first.has_complete_correlation


def test_newest_bookings_come_first(legacy_engine):
    assert [row.id for row in SqlLegacySource(legacy_engine).newest_bookings()] == [
        "book-b",
        "book-a",
    ]


def test_id_filters(legacy_engine):
    source = SqlLegacySource(legacy_engine)

    assert [row.id for row in source.list_bookings(["book-b"])] == ["book-b"]
    assert source.list_referrers([]) == []
    progress = source.list_progress(["book-a"])
    assert [(row.id, row.to_status) for row in progress] == [
        ("prog-1", "scheduled"),
        ("prog-2", "Re-Scheduled"),
    ]
    examinee = source.list_examinees(["exam-a"])[0]
    assert examinee.referrer_id == "ref-a"
    assert examinee.authorized_contact is True


def test_migration_reads_from_sql_store(legacy_engine, db_session, seeded, codec):
    stats = migrate_legacy_bookings(
        db_session,
        SqlLegacySource(legacy_engine),
        organization_id=seeded.organization_id,
        system_user_id=seeded.system_user_id,
        codec=codec,
    )

    assert stats.bookings.migrated == 1
    assert stats.bookings.skip_reasons["missingSpecialist"] == 1
    assert stats.progress.migrated == 2
    assert db_session.get(Booking, "book-a").status == BookingStatus.active
    assert db_session.get(Booking, "book-b") is None
