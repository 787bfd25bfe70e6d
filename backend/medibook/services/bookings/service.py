from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from medibook.core.encryption import FieldCodec
from medibook.models.base import utcnow
from medibook.models.booking import Booking, BookingProgress, BookingStage
from medibook.models.organization import User
from medibook.schemas.booking import BookingFilters, BookingOut, BookingProgressOut
from medibook.services.bookings.progress import ProgressTrail
from medibook.services.bookings.repository import BookingRepository
from medibook.services.bookings.state_machine import (
    SYSTEM_ACTOR,
    TransitionPlan,
    plan_archive,
    plan_correction,
    plan_stage_change,
)

logger = logging.getLogger(__name__)


class BookingNotFoundError(LookupError):
    pass


class UnknownActorError(PermissionError):
    pass


class BookingService:
    def __init__(self, session: Session, codec: FieldCodec | None = None) -> None:
        self.session = session
        self.bookings = BookingRepository(session, codec)
        self.trail = ProgressTrail(session)

    def _require_booking(self, booking_id: str, *, for_update: bool = False) -> Booking:
        booking = self.bookings.get(booking_id, for_update=for_update)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        return booking

    def _resolve_actor(self, actor_id: str) -> User | None:
        if actor_id == SYSTEM_ACTOR:
            return None
        user = self.session.scalar(select(User).where(User.id == actor_id))
        if user is None:
            raise UnknownActorError(f"Unknown actor {actor_id}")
        return user

    def current_stage(self, booking_id: str) -> BookingStage | None:
        latest = self.trail.latest_for(booking_id)
        return latest.to_status if latest else None

    def get_booking_by_id(self, booking_id: str) -> BookingOut:
        booking = self._require_booking(booking_id)
        return self.bookings.to_out(booking, self.current_stage(booking.id))

    def list_bookings(self, filters: BookingFilters | None = None) -> list[BookingOut]:
        rows = self.bookings.list(filters or BookingFilters())
        return [self.bookings.to_out(row, self.current_stage(row.id)) for row in rows]

    def get_booking_history(self, booking_id: str) -> list[BookingProgressOut]:
        self._require_booking(booking_id)
        return [
            BookingProgressOut.model_validate(entry)
            for entry in self.trail.history_for(booking_id)
        ]

    def apply_transition(
        self,
        booking: Booking,
        plan: TransitionPlan,
        *,
        changed_by: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
        changes: dict[str, Any] | None = None,
    ) -> BookingProgress:
        """Write the booking row and its progress entry in one transaction.

        Either both are committed or the session is rolled back and the error
        re-raised.
        """
        try:
            for field, value in (changes or {}).items():
                setattr(booking, field, value)
            _apply_markers(booking, plan, occurred_at or utcnow())
            booking.status = plan.to_status
            entry = self.trail.append(
                booking.id,
                from_status=plan.from_stage,
                to_status=plan.to_stage,
                from_coarse_status=plan.from_status if plan.changes_status else None,
                to_coarse_status=plan.to_status if plan.changes_status else None,
                is_correction=plan.is_correction,
                changed_by=changed_by,
                reason=reason,
                metadata=metadata,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            "Booking %s moved to %s/%s",
            booking.id,
            plan.to_status.value,
            plan.to_stage.value,
            extra={"booking_id": booking.id, "changed_by": changed_by},
        )
        return entry

    def update_booking_progress(
        self,
        booking_id: str,
        to_status: BookingStage,
        reason: str | None,
        actor: str,
    ) -> BookingOut:
        self._resolve_actor(actor)
        booking = self._require_booking(booking_id, for_update=True)
        plan = plan_stage_change(booking.status, self.current_stage(booking.id), to_status)
        self.apply_transition(booking, plan, changed_by=actor, reason=reason)
        return self.get_booking_by_id(booking_id)

    def archive_booking(self, booking_id: str, reason: str | None, actor: str) -> BookingOut:
        self._resolve_actor(actor)
        booking = self._require_booking(booking_id, for_update=True)
        plan = plan_archive(booking.status, self.current_stage(booking.id))
        self.apply_transition(booking, plan, changed_by=actor, reason=reason or "Archived")
        return self.get_booking_by_id(booking_id)

    def correct_booking_status(
        self,
        booking_id: str,
        to_status: BookingStage,
        reason: str,
        actor: str,
    ) -> BookingOut:
        user = self._resolve_actor(actor)
        booking = self._require_booking(booking_id, for_update=True)
        plan = plan_correction(
            booking.status,
            self.current_stage(booking.id),
            to_status,
            actor_id=actor,
            actor_is_admin=bool(user and user.is_admin),
        )
        metadata = {}
        if booking.cancelled_at is not None:
            metadata["clearedCancelledAt"] = booking.cancelled_at.isoformat()
        self.apply_transition(
            booking, plan, changed_by=actor, reason=reason, metadata=metadata
        )
        logger.warning(
            "Booking %s reopened by %s", booking_id, actor, extra={"booking_id": booking_id}
        )
        return self.get_booking_by_id(booking_id)


def _apply_markers(booking: Booking, plan: TransitionPlan, occurred_at: datetime) -> None:
    if plan.is_correction:
        booking.cancelled_at = None
        if plan.to_stage in {BookingStage.scheduled, BookingStage.rescheduled}:
            booking.completed_at = None
        return
    if (
        not plan.changes_stage
        and not plan.stage_override
        and plan.to_stage != BookingStage.rescheduled
    ):
        return
    if plan.to_stage in {BookingStage.scheduled, BookingStage.rescheduled}:
        if booking.scheduled_at is None:
            booking.scheduled_at = occurred_at
    elif plan.to_stage == BookingStage.generating_report:
        if booking.completed_at is None:
            booking.completed_at = occurred_at
    elif plan.to_stage == BookingStage.cancelled:
        if booking.cancelled_at is None:
            booking.cancelled_at = occurred_at
