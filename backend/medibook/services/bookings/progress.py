from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from medibook.models.booking import BookingProgress, BookingStage, BookingStatus
from medibook.models.base import utcnow


class ProgressTrail:
    """Append-only history of booking stage changes.

    Appends are flushed into the caller's transaction; committing is left to
    whoever changed the booking row the entry documents.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def append(
        self,
        booking_id: str,
        *,
        to_status: BookingStage,
        changed_by: str,
        from_status: BookingStage | None = None,
        from_coarse_status: BookingStatus | None = None,
        to_coarse_status: BookingStatus | None = None,
        is_correction: bool = False,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> BookingProgress:
        entry = BookingProgress(
            booking_id=booking_id,
            from_status=from_status,
            to_status=to_status,
            from_coarse_status=from_coarse_status,
            to_coarse_status=to_coarse_status,
            is_correction=is_correction,
            changed_by=changed_by,
            reason=reason,
            details=dict(metadata or {}),
            created_at=created_at or utcnow(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def history_for(self, booking_id: str) -> list[BookingProgress]:
        stmt = (
            select(BookingProgress)
            .where(BookingProgress.booking_id == booking_id)
            .order_by(BookingProgress.created_at.asc(), BookingProgress.id.asc())
        )
        return list(self.session.scalars(stmt))

    def latest_for(self, booking_id: str) -> BookingProgress | None:
        stmt = (
            select(BookingProgress)
            .where(BookingProgress.booking_id == booking_id)
            .order_by(BookingProgress.created_at.desc(), BookingProgress.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def has_history(self, booking_id: str) -> bool:
        return self.latest_for(booking_id) is not None
