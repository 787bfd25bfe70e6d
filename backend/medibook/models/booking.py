from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medibook.models.base import Base, TimestampMixin, UTCDateTime, new_id, utcnow


class BookingStatus(str, enum.Enum):
    active = "active"
    closed = "closed"
    archived = "archived"


class BookingType(str, enum.Enum):
    in_person = "in-person"
    telehealth = "telehealth"


class BookingStage(str, enum.Enum):
    scheduled = "scheduled"
    rescheduled = "rescheduled"
    cancelled = "cancelled"
    no_show = "no-show"
    generating_report = "generating-report"
    report_generated = "report-generated"
    payment_received = "payment-received"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("bookings_organization_id_idx", "organization_id"),
        Index("bookings_referrer_id_idx", "referrer_id"),
        Index("bookings_specialist_id_idx", "specialist_id"),
        Index("bookings_status_idx", "status"),
        CheckConstraint(
            "cancelled_at IS NULL OR status IN ('closed', 'archived')",
            name="ck_bookings_cancelled_closed",
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    created_by_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    referrer_id: Mapped[str] = mapped_column(ForeignKey("referrers.id"), nullable=False)
    specialist_id: Mapped[str | None] = mapped_column(ForeignKey("specialists.id"), nullable=True)
    examinee_id: Mapped[str] = mapped_column(ForeignKey("examinees.id"), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=_enum_values),
        default=BookingStatus.active,
        nullable=False,
    )

    type: Mapped[BookingType] = mapped_column(
        Enum(BookingType, name="booking_type", values_callable=_enum_values),
        default=BookingType.in_person,
        nullable=False,
    )
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    location: Mapped[str] = mapped_column(Text, default="", nullable=False)
    date_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    external_appointment_id: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False
    )
    external_appointment_type_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_calendar_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # ciphertext columns, see medibook.core.encryption.BOOKING_ENCRYPTED_FIELDS
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    examinee = relationship("Examinee", lazy="joined")
    specialist = relationship("Specialist", lazy="joined")


class BookingProgress(Base):
    __tablename__ = "booking_progress"
    __table_args__ = (
        Index("booking_progress_booking_id_idx", "booking_id"),
        Index("booking_progress_changed_by_idx", "changed_by"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[BookingStage | None] = mapped_column(
        Enum(BookingStage, name="booking_progress_status", values_callable=_enum_values),
        nullable=True,
    )
    to_status: Mapped[BookingStage] = mapped_column(
        Enum(BookingStage, name="booking_progress_status", values_callable=_enum_values),
        nullable=False,
    )
    from_coarse_status: Mapped[BookingStatus | None] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=_enum_values),
        nullable=True,
    )
    to_coarse_status: Mapped[BookingStatus | None] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=_enum_values),
        nullable=True,
    )
    is_correction: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class ProgressEntryImmutableError(RuntimeError):
    pass


@event.listens_for(BookingProgress, "before_update")
def _reject_progress_update(mapper, connection, target) -> None:
    raise ProgressEntryImmutableError(f"Progress entry {target.id} is append-only")


@event.listens_for(BookingProgress, "before_delete")
def _reject_progress_delete(mapper, connection, target) -> None:
    raise ProgressEntryImmutableError(f"Progress entry {target.id} is append-only")
