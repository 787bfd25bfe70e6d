from __future__ import annotations

import logging
from datetime import date, timezone

from sqlalchemy.orm import Session

from medibook.core.encryption import FieldCodec
from medibook.models.booking import BookingStage, BookingStatus
from medibook.services.bookings.service import BookingService
from medibook.services.bookings.state_machine import (
    SYSTEM_ACTOR,
    BookingNotEditableError,
    InvalidTransitionError,
    plan_stage_change,
)
from medibook.services.reconciliation.cancellation_sync import (
    AppointmentProvider,
    fetch_for_run,
)
from medibook.services.reconciliation.report import (
    SKIP_BOOKING_CLOSED,
    SKIP_INVALID_TRANSITION,
    AffectedBooking,
    SyncRunStats,
)
from medibook.services.reconciliation.types import ProviderAppointment

logger = logging.getLogger(__name__)


def sync_rescheduled_bookings(
    session: Session,
    provider: AppointmentProvider,
    start_date: date,
    end_date: date,
    *,
    dry_run: bool = False,
    codec: FieldCodec | None = None,
    stats: SyncRunStats | None = None,
) -> SyncRunStats:
    """Move local bookings to the provider's current appointment time."""
    stats = stats or SyncRunStats(mode="reschedule")
    stats.start_date = start_date.isoformat()
    stats.end_date = end_date.isoformat()
    stats.dry_run = dry_run
    service = BookingService(session, codec)

    appointments = fetch_for_run(provider, stats, start_date, end_date, canceled_only=False)
    if appointments is None:
        return stats

    for appointment in appointments:
        if appointment.canceled:
            continue
        try:
            _process_rescheduled(service, appointment, stats, dry_run=dry_run)
        except Exception as exc:
            session.rollback()
            logger.exception(
                "Failed to process rescheduled appointment %s",
                appointment.id,
                extra={"external_appointment_id": appointment.id},
            )
            stats.fail(appointment.id, str(exc) or exc.__class__.__name__)
    return stats


def _process_rescheduled(
    service: BookingService,
    appointment: ProviderAppointment,
    stats: SyncRunStats,
    *,
    dry_run: bool,
) -> None:
    booking = service.bookings.find_by_external_id(appointment.id)
    if booking is None:
        stats.not_found += 1
        return
    stats.matched += 1

    new_time = appointment.starts_at.astimezone(timezone.utc)
    old_time = booking.date_time
    if old_time is not None and old_time == new_time:
        stats.already_in_target_state += 1
        return
    if booking.status != BookingStatus.active:
        stats.skip(SKIP_BOOKING_CLOSED)
        logger.info("Skipped: booking %s is %s", booking.id, booking.status.value)
        return

    try:
        plan = plan_stage_change(
            booking.status, service.current_stage(booking.id), BookingStage.rescheduled
        )
    except (InvalidTransitionError, BookingNotEditableError) as exc:
        stats.skip(SKIP_INVALID_TRANSITION)
        logger.warning("Skipped booking %s: %s", booking.id, exc)
        return

    old_label = old_time.isoformat() if old_time else None
    summary = AffectedBooking(
        booking_id=booking.id,
        external_appointment_id=appointment.id,
        appointment_date=new_time.date().isoformat(),
        examinee_name=service.bookings.examinee_name(booking) or appointment.examinee_name,
        detail=f"{old_label or 'unscheduled'} -> {new_time.isoformat()}",
    )
    if dry_run:
        stats.updated += 1
        stats.affected.append(summary)
        logger.info("DRY RUN: would reschedule booking %s", booking.id)
        return

    service.apply_transition(
        booking,
        plan,
        changed_by=SYSTEM_ACTOR,
        reason="Appointment rescheduled in provider calendar",
        metadata={
            "source": "acuity",
            "externalAppointmentId": appointment.id,
            "previousDateTime": old_label,
            "newDateTime": new_time.isoformat(),
        },
        changes={"date_time": new_time},
    )
    stats.updated += 1
    stats.affected.append(summary)
    logger.info("Rescheduled booking %s to %s", booking.id, new_time.isoformat())
