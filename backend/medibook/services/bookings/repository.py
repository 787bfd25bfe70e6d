from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from medibook.core.encryption import (
    BOOKING_ENCRYPTED_FIELDS,
    DOCUMENT_ENCRYPTED_FIELDS,
    EXAMINEE_ENCRYPTED_FIELDS,
    REFERRER_ENCRYPTED_FIELDS,
    FieldCodec,
    get_field_codec,
)
from medibook.models.booking import Booking, BookingStage, BookingStatus
from medibook.models.document import Document
from medibook.models.people import Examinee, Referrer
from medibook.schemas.booking import BookingFilters, BookingOut, ExamineeSummary


class BookingRepository:
    """Data access for bookings and their people.

    ORM rows carry ciphertext for the encrypted columns; every value crossing
    this class in either direction goes through the field codec.
    """

    def __init__(self, session: Session, codec: FieldCodec | None = None) -> None:
        self.session = session
        self.codec = codec or get_field_codec()

    def get(self, booking_id: str, *, for_update: bool = False) -> Booking | None:
        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update(of=Booking)
        return self.session.scalar(stmt)

    def find_by_external_id(self, external_appointment_id: str) -> Booking | None:
        return self.session.scalar(
            select(Booking).where(Booking.external_appointment_id == external_appointment_id)
        )

    def list(self, filters: BookingFilters) -> list[Booking]:
        stmt = select(Booking)
        if filters.organization_id:
            stmt = stmt.where(Booking.organization_id == filters.organization_id)
        if filters.referrer_id:
            stmt = stmt.where(Booking.referrer_id == filters.referrer_id)
        if filters.specialist_id:
            stmt = stmt.where(Booking.specialist_id == filters.specialist_id)
        if filters.examinee_id:
            stmt = stmt.where(Booking.examinee_id == filters.examinee_id)
        if filters.external_appointment_id:
            stmt = stmt.where(
                Booking.external_appointment_id == filters.external_appointment_id
            )
        if filters.status is not None:
            stmt = stmt.where(Booking.status == filters.status)
        elif not filters.include_archived:
            stmt = stmt.where(Booking.status != BookingStatus.archived)
        if filters.date_from is not None:
            stmt = stmt.where(Booking.date_time >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(Booking.date_time < filters.date_to)
        stmt = stmt.order_by(Booking.date_time.asc(), Booking.id.asc()).limit(filters.limit)
        return list(self.session.scalars(stmt).unique())

    def add_booking(self, values: dict[str, Any]) -> Booking:
        booking = Booking(**self.codec.encode_fields(values, BOOKING_ENCRYPTED_FIELDS))
        self.session.add(booking)
        self.session.flush()
        return booking

    def add_referrer(self, values: dict[str, Any]) -> Referrer:
        referrer = Referrer(**self.codec.encode_fields(values, REFERRER_ENCRYPTED_FIELDS))
        self.session.add(referrer)
        self.session.flush()
        return referrer

    def add_examinee(self, values: dict[str, Any]) -> Examinee:
        examinee = Examinee(**self.codec.encode_fields(values, EXAMINEE_ENCRYPTED_FIELDS))
        self.session.add(examinee)
        self.session.flush()
        return examinee

    def add_document(self, values: dict[str, Any]) -> Document:
        document = Document(**self.codec.encode_fields(values, DOCUMENT_ENCRYPTED_FIELDS))
        self.session.add(document)
        self.session.flush()
        return document

    def document_fields(self, document: Document) -> dict[str, str | None]:
        return self.codec.decode_fields(
            {field: getattr(document, field) for field in DOCUMENT_ENCRYPTED_FIELDS},
            DOCUMENT_ENCRYPTED_FIELDS,
        )

    def set_notes(
        self,
        booking: Booking,
        *,
        notes: str | None = None,
        internal_notes: str | None = None,
    ) -> None:
        booking.notes = self.codec.encode(notes)
        booking.internal_notes = self.codec.encode(internal_notes)

    def examinee_name(self, booking: Booking) -> str:
        examinee = booking.examinee
        if examinee is None:
            return ""
        first = self.codec.decode(examinee.first_name) or ""
        last = self.codec.decode(examinee.last_name) or ""
        return f"{first} {last}".strip()

    def to_out(self, booking: Booking, stage: BookingStage | None = None) -> BookingOut:
        examinee = None
        if booking.examinee is not None:
            examinee = ExamineeSummary(
                id=booking.examinee.id,
                first_name=self.codec.decode(booking.examinee.first_name) or "",
                last_name=self.codec.decode(booking.examinee.last_name) or "",
            )
        return BookingOut(
            id=booking.id,
            organization_id=booking.organization_id,
            referrer_id=booking.referrer_id,
            specialist_id=booking.specialist_id,
            examinee_id=booking.examinee_id,
            examinee=examinee,
            status=booking.status,
            stage=stage,
            type=booking.type,
            duration=booking.duration,
            location=booking.location,
            date_time=booking.date_time,
            external_appointment_id=booking.external_appointment_id,
            external_appointment_type_id=booking.external_appointment_type_id,
            external_calendar_id=booking.external_calendar_id,
            scheduled_at=booking.scheduled_at,
            completed_at=booking.completed_at,
            cancelled_at=booking.cancelled_at,
            notes=self.codec.decode(booking.notes),
            internal_notes=self.codec.decode(booking.internal_notes),
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )
