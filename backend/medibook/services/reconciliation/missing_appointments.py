from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from medibook.core.encryption import FieldCodec
from medibook.models.booking import Booking, BookingStage, BookingStatus, BookingType
from medibook.models.people import Specialist
from medibook.services.bookings.service import BookingService
from medibook.services.bookings.state_machine import SYSTEM_ACTOR, plan_stage_change
from medibook.services.reconciliation.cancellation_sync import (
    AppointmentProvider,
    fetch_for_run,
)
from medibook.services.reconciliation.report import (
    SKIP_MISSING_REFERRER,
    SKIP_MISSING_SPECIALIST,
    AffectedBooking,
    SyncRunStats,
)
from medibook.services.reconciliation.types import ProviderAppointment

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60

# the provider has no clinical intake data; these fill the required examinee columns
PLACEHOLDER_DATE_OF_BIRTH = "1970-01-01"
PLACEHOLDER_ADDRESS = "Address not provided"
PLACEHOLDER_CONDITION = "Condition not provided"
PLACEHOLDER_CASE_TYPE = "General"


def find_missing_appointments(
    session: Session, appointments: Iterable[ProviderAppointment]
) -> list[ProviderAppointment]:
    """Return live provider appointments that have no local booking."""
    live = [appointment for appointment in appointments if not appointment.canceled]
    if not live:
        return []
    known = set(
        session.scalars(
            select(Booking.external_appointment_id).where(
                Booking.external_appointment_id.in_([appointment.id for appointment in live])
            )
        )
    )
    return [appointment for appointment in live if appointment.id not in known]


def import_missing_appointments(
    session: Session,
    provider: AppointmentProvider,
    start_date: date,
    end_date: date,
    *,
    organization_id: str,
    system_user_id: str,
    dry_run: bool = False,
    codec: FieldCodec | None = None,
    stats: SyncRunStats | None = None,
) -> SyncRunStats:
    """Create local bookings for provider appointments that were never imported.

    Each appointment gets a new referrer, examinee and booking plus an initial
    ``scheduled`` progress entry, all committed together.
    """
    stats = stats or SyncRunStats(mode="import")
    stats.start_date = start_date.isoformat()
    stats.end_date = end_date.isoformat()
    stats.dry_run = dry_run
    service = BookingService(session, codec)

    appointments = fetch_for_run(provider, stats, start_date, end_date, canceled_only=False)
    if appointments is None:
        return stats

    live_count = sum(1 for appointment in appointments if not appointment.canceled)
    missing = find_missing_appointments(session, appointments)
    stats.matched = live_count - len(missing)
    stats.already_in_target_state = stats.matched
    stats.not_found = len(missing)
    logger.info("%s of %s live appointments have no local booking", len(missing), live_count)

    for appointment in missing:
        try:
            _import_appointment(
                service,
                appointment,
                stats,
                organization_id=organization_id,
                system_user_id=system_user_id,
                dry_run=dry_run,
            )
        except Exception as exc:
            session.rollback()
            logger.exception(
                "Failed to import appointment %s",
                appointment.id,
                extra={"external_appointment_id": appointment.id},
            )
            stats.fail(appointment.id, str(exc) or exc.__class__.__name__)
    return stats


def _specialist_for_calendar(session: Session, calendar_id: str | None) -> Specialist | None:
    if not calendar_id:
        return None
    return session.scalar(
        select(Specialist).where(Specialist.external_calendar_id == calendar_id).limit(1)
    )


def _booking_type(appointment: ProviderAppointment) -> BookingType:
    if appointment.type_label and "telehealth" in appointment.type_label.lower():
        return BookingType.telehealth
    return BookingType.in_person


def _summary(appointment: ProviderAppointment, booking_id: str) -> AffectedBooking:
    return AffectedBooking(
        booking_id=booking_id,
        external_appointment_id=appointment.id,
        appointment_date=appointment.starts_at.date().isoformat(),
        examinee_name=appointment.examinee_name,
        detail=appointment.type_label,
    )


def _import_appointment(
    service: BookingService,
    appointment: ProviderAppointment,
    stats: SyncRunStats,
    *,
    organization_id: str,
    system_user_id: str,
    dry_run: bool,
) -> None:
    specialist = _specialist_for_calendar(service.session, appointment.calendar_id)
    if specialist is None:
        stats.skip(SKIP_MISSING_SPECIALIST)
        logger.warning(
            "Skipped appointment %s: no specialist for calendar %s",
            appointment.id,
            appointment.calendar_id,
        )
        return

    email = (appointment.email or "").strip().lower()
    if not (email and appointment.first_name and appointment.last_name):
        stats.skip(SKIP_MISSING_REFERRER)
        logger.warning("Skipped appointment %s: missing referrer details", appointment.id)
        return

    if dry_run:
        stats.updated += 1
        stats.affected.append(_summary(appointment, "(new)"))
        logger.info("DRY RUN: would import appointment %s", appointment.id)
        return

    repo = service.bookings
    referrer = repo.add_referrer(
        {
            "organization_id": organization_id,
            "user_id": None,
            "first_name": appointment.first_name,
            "last_name": appointment.last_name,
            "email": email,
            "phone": appointment.phone or "",
            "job_title": None,
        }
    )
    examinee = repo.add_examinee(
        {
            "referrer_id": referrer.id,
            "first_name": appointment.first_name,
            "last_name": appointment.last_name,
            "date_of_birth": PLACEHOLDER_DATE_OF_BIRTH,
            "address": PLACEHOLDER_ADDRESS,
            "email": email,
            "phone_number": appointment.phone or "",
            "authorized_contact": True,
            "condition": PLACEHOLDER_CONDITION,
            "case_type": PLACEHOLDER_CASE_TYPE,
        }
    )
    booking = repo.add_booking(
        {
            "organization_id": organization_id,
            "created_by_id": system_user_id,
            "referrer_id": referrer.id,
            "specialist_id": specialist.id,
            "examinee_id": examinee.id,
            "status": BookingStatus.active,
            "type": _booking_type(appointment),
            "duration": appointment.duration or DEFAULT_DURATION_MINUTES,
            "location": "",
            "date_time": appointment.starts_at,
            "external_appointment_id": appointment.id,
            "external_appointment_type_id": appointment.appointment_type_id,
            "external_calendar_id": appointment.calendar_id,
        }
    )
    plan = plan_stage_change(BookingStatus.active, None, BookingStage.scheduled)
    service.apply_transition(
        booking,
        plan,
        changed_by=SYSTEM_ACTOR,
        reason="Imported from provider calendar",
        metadata={"source": "acuity", "externalAppointmentId": appointment.id},
        occurred_at=appointment.starts_at,
    )
    stats.updated += 1
    stats.affected.append(_summary(appointment, booking.id))
    logger.info("Imported appointment %s as booking %s", appointment.id, booking.id)
