from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError

from medibook.core.encryption import FieldDecodeError
from medibook.models.booking import (
    Booking,
    BookingProgress,
    BookingStage,
    BookingStatus,
    ProgressEntryImmutableError,
)
from medibook.schemas.booking import BookingFilters
from medibook.services.bookings.progress import ProgressTrail
from medibook.services.bookings.service import (
    BookingNotFoundError,
    BookingService,
    UnknownActorError,
)
from medibook.services.bookings.state_machine import (
    BookingNotEditableError,
    InvalidTransitionError,
    is_valid_walk,
)


def _progress_count(session, booking_id):
    return session.scalar(
        select(func.count()).select_from(BookingProgress).where(
            BookingProgress.booking_id == booking_id
        )
    )


def test_get_booking_decrypts_and_reports_stage(db_session, make_booking, codec):
    booking_id = make_booking("A123", notes="Needs interpreter", first_name="Ana", last_name="Lee")
    out = BookingService(db_session, codec).get_booking_by_id(booking_id)

    assert out.status == BookingStatus.active
    assert out.stage == BookingStage.scheduled
    assert out.notes == "Needs interpreter"
    assert out.examinee.full_name == "Ana Lee"


def test_get_booking_unknown_id(db_session, seeded, codec):
    with pytest.raises(BookingNotFoundError):
        BookingService(db_session, codec).get_booking_by_id("missing")


def test_corrupted_ciphertext_surfaces_as_decode_error(db_session, make_booking, codec):
    booking_id = make_booking("A123", notes="Needs interpreter")
    db_session.execute(
        text("UPDATE bookings SET notes = 'enc:garbage' WHERE id = :id"), {"id": booking_id}
    )
    db_session.commit()

    with pytest.raises(FieldDecodeError):
        BookingService(db_session, codec).get_booking_by_id(booking_id)


def test_list_bookings_hides_archived_and_filters_by_date(db_session, make_booking, codec, seeded):
    early = make_booking("A1", date_time=datetime(2025, 10, 1, 9, tzinfo=timezone.utc))
    late = make_booking("A2", date_time=datetime(2025, 10, 20, 9, tzinfo=timezone.utc))
    archived = make_booking(
        "A3",
        status=BookingStatus.archived,
        stage=BookingStage.cancelled,
        cancelled_at=datetime(2025, 9, 30, tzinfo=timezone.utc),
    )
    service = BookingService(db_session, codec)

    assert [b.id for b in service.list_bookings()] == [early, late]
    assert archived in [b.id for b in service.list_bookings(BookingFilters(include_archived=True))]
    window = BookingFilters(
        date_from=datetime(2025, 10, 10, tzinfo=timezone.utc),
        date_to=datetime(2025, 10, 31, tzinfo=timezone.utc),
    )
    assert [b.id for b in service.list_bookings(window)] == [late]
    assert [
        b.id for b in service.list_bookings(BookingFilters(status=BookingStatus.archived))
    ] == [archived]


def test_progress_update_writes_booking_and_trail(db_session, make_booking, codec, seeded):
    booking_id = make_booking("A123")
    service = BookingService(db_session, codec)

    out = service.update_booking_progress(
        booking_id, BookingStage.generating_report, "Examination done", seeded.staff_id
    )

    assert out.status == BookingStatus.active
    assert out.stage == BookingStage.generating_report
    assert out.completed_at is not None
    history = service.get_booking_history(booking_id)
    assert [entry.to_status for entry in history] == [
        BookingStage.scheduled,
        BookingStage.generating_report,
    ]
    latest = history[-1]
    assert latest.from_status == BookingStage.scheduled
    assert latest.changed_by == seeded.staff_id
    assert latest.from_coarse_status is None
    assert latest.to_coarse_status is None


def test_closing_stage_closes_booking_and_records_coarse_change(
    db_session, make_booking, codec, seeded
):
    booking_id = make_booking("A123")
    service = BookingService(db_session, codec)

    out = service.update_booking_progress(
        booking_id, BookingStage.cancelled, "Examinee withdrew", seeded.staff_id
    )

    assert out.status == BookingStatus.closed
    assert out.cancelled_at is not None
    latest = service.get_booking_history(booking_id)[-1]
    assert latest.from_coarse_status == BookingStatus.active
    assert latest.to_coarse_status == BookingStatus.closed


def test_closed_booking_rejects_further_progress(db_session, make_booking, codec, seeded):
    booking_id = make_booking("A123")
    service = BookingService(db_session, codec)
    service.update_booking_progress(booking_id, BookingStage.no_show, None, seeded.staff_id)

    with pytest.raises(BookingNotEditableError):
        service.update_booking_progress(
            booking_id, BookingStage.rescheduled, None, seeded.staff_id
        )
    assert _progress_count(db_session, booking_id) == 2


def test_invalid_transition_writes_nothing(db_session, make_booking, codec, seeded):
    booking_id = make_booking("A123")
    service = BookingService(db_session, codec)

    with pytest.raises(InvalidTransitionError):
        service.update_booking_progress(
            booking_id, BookingStage.payment_received, None, seeded.staff_id
        )
    assert _progress_count(db_session, booking_id) == 1


def test_failed_trail_write_leaves_booking_untouched(
    db_session, make_booking, codec, seeded, monkeypatch
):
    booking_id = make_booking("A123")
    service = BookingService(db_session, codec)

    def _boom(self, *args, **kwargs):
        raise RuntimeError("trail unavailable")

    monkeypatch.setattr(ProgressTrail, "append", _boom)
    with pytest.raises(RuntimeError, match="trail unavailable"):
        service.update_booking_progress(
            booking_id, BookingStage.cancelled, None, seeded.staff_id
        )

    db_session.expire_all()
    booking = db_session.get(Booking, booking_id)
    assert booking.status == BookingStatus.active
    assert booking.cancelled_at is None
    assert _progress_count(db_session, booking_id) == 1


def test_unknown_actor_is_rejected(db_session, make_booking, codec):
    booking_id = make_booking("A123")
    with pytest.raises(UnknownActorError):
        BookingService(db_session, codec).update_booking_progress(
            booking_id, BookingStage.cancelled, None, "nobody"
        )


def test_progress_entries_are_append_only(db_session, make_booking):
    booking_id = make_booking("A123")
    entry = ProgressTrail(db_session).latest_for(booking_id)

    entry.reason = "rewritten"
    with pytest.raises(ProgressEntryImmutableError):
        db_session.flush()
    db_session.rollback()

    entry = ProgressTrail(db_session).latest_for(booking_id)
    db_session.delete(entry)
    with pytest.raises(ProgressEntryImmutableError):
        db_session.flush()
    db_session.rollback()
    assert _progress_count(db_session, booking_id) == 1


def test_archive_restates_stage(db_session, make_booking, codec, seeded):
    booking_id = make_booking("A123")
    service = BookingService(db_session, codec)
    service.update_booking_progress(booking_id, BookingStage.cancelled, None, seeded.staff_id)

    out = service.archive_booking(booking_id, None, seeded.staff_id)

    assert out.status == BookingStatus.archived
    assert out.stage == BookingStage.cancelled
    history = service.get_booking_history(booking_id)
    archive_entry = history[-1]
    assert archive_entry.from_status == archive_entry.to_status == BookingStage.cancelled
    assert archive_entry.from_coarse_status == BookingStatus.closed
    assert archive_entry.to_coarse_status == BookingStatus.archived
    assert archive_entry.reason == "Archived"
    assert is_valid_walk(history)


def test_archive_requires_closed_booking(db_session, make_booking, codec, seeded):
    booking_id = make_booking("A123")
    with pytest.raises(InvalidTransitionError):
        BookingService(db_session, codec).archive_booking(booking_id, None, seeded.staff_id)


def test_admin_correction_reopens_booking(db_session, make_booking, codec, seeded):
    booking_id = make_booking("A123")
    service = BookingService(db_session, codec)
    service.update_booking_progress(booking_id, BookingStage.cancelled, None, seeded.staff_id)

    out = service.correct_booking_status(
        booking_id, BookingStage.scheduled, "Cancelled in error", seeded.admin_id
    )

    assert out.status == BookingStatus.active
    assert out.stage == BookingStage.scheduled
    assert out.cancelled_at is None
    history = service.get_booking_history(booking_id)
    correction = history[-1]
    assert correction.is_correction
    assert correction.changed_by == seeded.admin_id
    assert "clearedCancelledAt" in correction.metadata
    assert is_valid_walk(history)


def test_correction_by_staff_is_refused(db_session, make_booking, codec, seeded):
    booking_id = make_booking("A123")
    service = BookingService(db_session, codec)
    service.update_booking_progress(booking_id, BookingStage.cancelled, None, seeded.staff_id)

    with pytest.raises(InvalidTransitionError):
        service.correct_booking_status(
            booking_id, BookingStage.scheduled, "Oops", seeded.staff_id
        )
    assert db_session.get(Booking, booking_id).status == BookingStatus.closed


def test_cancelled_at_requires_closed_status(db_session, make_booking):
    booking_id = make_booking("A123")
    booking = db_session.get(Booking, booking_id)
    booking.cancelled_at = datetime(2025, 10, 5, tzinfo=timezone.utc)
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()
