from datetime import date, datetime, timezone

from sqlalchemy import func, select

from medibook.models.booking import Booking, BookingProgress, BookingStage, BookingStatus
from medibook.services.bookings.service import BookingService
from medibook.services.bookings.state_machine import is_valid_walk
from medibook.services.reconciliation.acuity_client import ProviderError
from medibook.services.reconciliation.cancellation_sync import sync_canceled_bookings
from medibook.services.reconciliation.types import ProviderAppointment

START = date(2025, 10, 1)
END = date(2025, 10, 31)


class FakeProvider:
    def __init__(self, appointments=None, error=None):
        self.appointments = list(appointments or [])
        self.error = error
        self.calls = []

    def list_appointments(self, start_date, end_date, *, canceled_only=False):
        self.calls.append((start_date, end_date, canceled_only))
        if self.error is not None:
            raise self.error
        return list(self.appointments)

    def close(self):
        pass


def _appt(appointment_id, *, canceled=True, starts_at="2025-10-05T10:00:00Z", **extra):
    payload = {
        "id": appointment_id,
        "firstName": "Jane",
        "lastName": "Doe",
        "datetime": starts_at,
        "canceled": canceled,
    }
    payload.update(extra)
    return ProviderAppointment.model_validate(payload)


def _history(session, booking_id):
    return list(
        session.scalars(
            select(BookingProgress)
            .where(BookingProgress.booking_id == booking_id)
            .order_by(BookingProgress.created_at, BookingProgress.id)
        )
    )


def test_canceled_appointment_closes_booking(db_session, make_booking, codec):
    booking_id = make_booking("A123")
    provider = FakeProvider([_appt("A123")])

    stats = sync_canceled_bookings(db_session, provider, START, END, codec=codec)

    assert provider.calls == [(START, END, True)]
    booking = db_session.get(Booking, booking_id)
    assert booking.status == BookingStatus.closed
    assert booking.cancelled_at == datetime(2025, 10, 5, 10, 0, tzinfo=timezone.utc)
    entry = _history(db_session, booking_id)[-1]
    assert entry.to_status == BookingStage.cancelled
    assert entry.from_status == BookingStage.scheduled
    assert entry.changed_by == "system"
    assert entry.from_coarse_status == BookingStatus.active
    assert entry.to_coarse_status == BookingStatus.closed
    assert entry.details["externalAppointmentId"] == "A123"
    assert entry.details["source"] == "acuity"
    assert stats.fetched == 1
    assert stats.matched == 1
    assert stats.updated == 1
    assert [item.booking_id for item in stats.affected] == [booking_id]
    assert stats.affected[0].examinee_name == "Jane Doe"


def test_unknown_appointment_is_counted_not_created(db_session, make_booking, codec):
    make_booking("A123")
    before = db_session.scalar(select(func.count()).select_from(Booking))

    stats = sync_canceled_bookings(
        db_session, FakeProvider([_appt("A999")]), START, END, codec=codec
    )

    assert stats.not_found == 1
    assert stats.updated == 0
    assert db_session.scalar(select(func.count()).select_from(Booking)) == before


def test_dry_run_reports_without_writing(db_session, make_booking, codec):
    booking_id = make_booking("A123")

    stats = sync_canceled_bookings(
        db_session, FakeProvider([_appt("A123")]), START, END, dry_run=True, codec=codec
    )

    booking = db_session.get(Booking, booking_id)
    assert booking.status == BookingStatus.active
    assert booking.cancelled_at is None
    assert len(_history(db_session, booking_id)) == 1
    assert stats.updated == 1
    assert stats.dry_run
    assert "Would update bookings (1):" in stats.render_report()


def test_second_run_is_a_no_op(db_session, make_booking, codec):
    booking_id = make_booking("A123")
    provider = FakeProvider([_appt("A123")])
    sync_canceled_bookings(db_session, provider, START, END, codec=codec)

    stats = sync_canceled_bookings(db_session, provider, START, END, codec=codec)

    assert stats.updated == 0
    assert stats.already_in_target_state == 1
    assert len(_history(db_session, booking_id)) == 2


def test_active_appointments_are_ignored(db_session, make_booking, codec):
    booking_id = make_booking("A123")

    stats = sync_canceled_bookings(
        db_session, FakeProvider([_appt("A123", canceled=False)]), START, END, codec=codec
    )

    assert stats.matched == 0
    assert db_session.get(Booking, booking_id).status == BookingStatus.active


def test_booking_past_cancellable_stage_still_closes(db_session, make_booking, codec):
    booking_id = make_booking("A123", stage=BookingStage.generating_report)

    stats = sync_canceled_bookings(
        db_session, FakeProvider([_appt("A123")]), START, END, codec=codec
    )

    assert stats.updated == 1
    assert stats.skip_reasons == {}
    booking = db_session.get(Booking, booking_id)
    assert booking.status == BookingStatus.closed
    assert booking.cancelled_at == datetime(2025, 10, 5, 10, 0, tzinfo=timezone.utc)
    history = _history(db_session, booking_id)
    entry = history[-1]
    assert entry.from_status == BookingStage.generating_report
    assert entry.to_status == BookingStage.cancelled
    assert entry.to_coarse_status == BookingStatus.closed
    assert entry.details["stageOverride"] == "generating-report"
    assert is_valid_walk(history)


def test_ordinary_cancellation_has_no_stage_override(db_session, make_booking, codec):
    booking_id = make_booking("A123", stage=BookingStage.rescheduled)

    sync_canceled_bookings(db_session, FakeProvider([_appt("A123")]), START, END, codec=codec)

    assert "stageOverride" not in _history(db_session, booking_id)[-1].details


def test_one_failing_booking_does_not_stop_the_batch(db_session, make_booking, codec, monkeypatch):
    first = make_booking("A1")
    second = make_booking("A2")
    original = BookingService.apply_transition

    def _flaky(self, booking, plan, **kwargs):
        if booking.external_appointment_id == "A1":
            raise RuntimeError("database hiccup")
        return original(self, booking, plan, **kwargs)

    monkeypatch.setattr(BookingService, "apply_transition", _flaky)
    stats = sync_canceled_bookings(
        db_session, FakeProvider([_appt("A1"), _appt("A2")]), START, END, codec=codec
    )

    assert [(failure.external_id, failure.reason) for failure in stats.failures] == [
        ("A1", "database hiccup")
    ]
    assert stats.updated == 1
    assert db_session.get(Booking, first).status == BookingStatus.active
    assert db_session.get(Booking, second).status == BookingStatus.closed
    assert "Errors (1):" in stats.render_report()


def test_provider_failure_aborts_before_writes(db_session, make_booking, codec):
    booking_id = make_booking("A123")
    provider = FakeProvider(error=ProviderError("Provider request failed: 503 Service Unavailable"))

    stats = sync_canceled_bookings(db_session, provider, START, END, codec=codec)

    assert stats.fatal_error == "Provider request failed: 503 Service Unavailable"
    assert stats.fetched == 0
    assert db_session.get(Booking, booking_id).status == BookingStatus.active
    assert "Run aborted" in stats.render_report()
