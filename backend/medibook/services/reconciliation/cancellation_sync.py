from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Protocol

from sqlalchemy.orm import Session

from medibook.core.encryption import FieldCodec
from medibook.models.booking import Booking, BookingStatus
from medibook.services.bookings.service import BookingService
from medibook.services.bookings.state_machine import (
    STAGE_OVERRIDE_KEY,
    SYSTEM_ACTOR,
    plan_system_cancellation,
)
from medibook.services.reconciliation.acuity_client import ProviderError
from medibook.services.reconciliation.report import AffectedBooking, SyncRunStats
from medibook.services.reconciliation.types import ProviderAppointment

logger = logging.getLogger(__name__)


class AppointmentProvider(Protocol):
    def list_appointments(
        self, start_date: date, end_date: date, *, canceled_only: bool = False
    ) -> list[ProviderAppointment]:
        raise NotImplementedError


def appointment_date(booking: Booking, appointment: ProviderAppointment) -> str:
    if booking.date_time is not None:
        return booking.date_time.date().isoformat()
    return appointment.starts_at.date().isoformat()


def fetch_for_run(
    provider: AppointmentProvider,
    stats: SyncRunStats,
    start_date: date,
    end_date: date,
    *,
    canceled_only: bool,
) -> list[ProviderAppointment] | None:
    try:
        appointments = provider.list_appointments(
            start_date, end_date, canceled_only=canceled_only
        )
    except ProviderError as exc:
        logger.error("Provider fetch failed; nothing to reconcile: %s", exc)
        stats.fatal_error = str(exc)
        return None
    stats.fetched = len(appointments)
    return appointments


def sync_canceled_bookings(
    session: Session,
    provider: AppointmentProvider,
    start_date: date,
    end_date: date,
    *,
    dry_run: bool = False,
    codec: FieldCodec | None = None,
    stats: SyncRunStats | None = None,
) -> SyncRunStats:
    """Close local bookings whose provider appointment was canceled.

    Each appointment is handled in its own transaction. A provider fetch
    failure stops the run before any write and is reported on the stats.
    """
    stats = stats or SyncRunStats(mode="cancellation")
    stats.start_date = start_date.isoformat()
    stats.end_date = end_date.isoformat()
    stats.dry_run = dry_run
    service = BookingService(session, codec)

    appointments = fetch_for_run(provider, stats, start_date, end_date, canceled_only=True)
    if appointments is None:
        return stats
    apply_cancellations(service, appointments, stats, dry_run=dry_run)
    return stats


def apply_cancellations(
    service: BookingService,
    appointments: Iterable[ProviderAppointment],
    stats: SyncRunStats,
    *,
    dry_run: bool = False,
) -> None:
    for appointment in appointments:
        if not appointment.canceled:
            continue
        try:
            _process_canceled(service, appointment, stats, dry_run=dry_run)
        except Exception as exc:
            service.session.rollback()
            logger.exception(
                "Failed to process canceled appointment %s",
                appointment.id,
                extra={"external_appointment_id": appointment.id},
            )
            stats.fail(appointment.id, str(exc) or exc.__class__.__name__)


def _process_canceled(
    service: BookingService,
    appointment: ProviderAppointment,
    stats: SyncRunStats,
    *,
    dry_run: bool,
) -> None:
    booking = service.bookings.find_by_external_id(appointment.id)
    if booking is None:
        stats.not_found += 1
        logger.info("Skipped: no local booking for appointment %s", appointment.id)
        return
    stats.matched += 1

    if booking.status in {BookingStatus.closed, BookingStatus.archived}:
        stats.already_in_target_state += 1
        logger.info("Skipped: booking %s already %s", booking.id, booking.status.value)
        return

    plan = plan_system_cancellation(booking.status, service.current_stage(booking.id))

    summary = AffectedBooking(
        booking_id=booking.id,
        external_appointment_id=appointment.id,
        appointment_date=appointment_date(booking, appointment),
        examinee_name=service.bookings.examinee_name(booking) or appointment.examinee_name,
    )
    if dry_run:
        stats.updated += 1
        stats.affected.append(summary)
        logger.info("DRY RUN: would close booking %s", booking.id)
        return

    metadata = {
        "source": "acuity",
        "externalAppointmentId": appointment.id,
        "providerCanceledAt": appointment.starts_at.isoformat(),
    }
    if plan.stage_override:
        metadata[STAGE_OVERRIDE_KEY] = plan.from_stage.value
        logger.warning(
            "Booking %s closed from stage %s outside the normal workflow",
            booking.id,
            plan.from_stage.value,
        )
    service.apply_transition(
        booking,
        plan,
        changed_by=SYSTEM_ACTOR,
        reason="Appointment canceled in provider calendar",
        metadata=metadata,
        occurred_at=appointment.starts_at,
    )
    stats.updated += 1
    stats.affected.append(summary)
    logger.info("Closed booking %s (appointment %s)", booking.id, appointment.id)
