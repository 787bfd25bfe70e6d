from __future__ import annotations

import re
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def _as_str(value):
    if value is None or value == "":
        return None
    return str(value)


class ProviderAppointment(BaseModel):
    """One appointment as listed by the scheduling provider."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    email: str | None = None
    phone: str | None = None
    date_label: str | None = Field(default=None, alias="date")
    time_label: str | None = Field(default=None, alias="time")
    type_label: str | None = Field(default=None, alias="type")
    starts_at: datetime = Field(alias="datetime")
    duration: int | None = None
    appointment_type_id: str | None = Field(default=None, alias="appointmentTypeID")
    calendar_id: str | None = Field(default=None, alias="calendarID")
    canceled: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value)

    @field_validator("appointment_type_id", "calendar_id", mode="before")
    @classmethod
    def _coerce_optional_ids(cls, value):
        return _as_str(value)

    @field_validator("duration", mode="before")
    @classmethod
    def _coerce_duration(cls, value):
        if value in {"", None}:
            return None
        return int(value)

    @field_validator("starts_at", mode="before")
    @classmethod
    def _normalize_offset(cls, value):
        if isinstance(value, str):
            return _COMPACT_OFFSET.sub(r"\1:\2", value.strip())
        return value

    @field_validator("starts_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # naive provider times are UTC, matching UTCDateTime
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def examinee_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class LegacySpecialist(BaseModel):
    id: str
    external_calendar_id: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value)

    @field_validator("external_calendar_id", mode="before")
    @classmethod
    def _coerce_calendar(cls, value):
        return _as_str(value)


class LegacyReferrer(BaseModel):
    id: str
    user_id: str | None = None
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    phone: str | None = None
    job_title: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value):
        return _as_str(value)


class LegacyExaminee(BaseModel):
    id: str
    referrer_id: str
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""
    address: str = ""
    email: str = ""
    phone_number: str | None = None
    authorized_contact: bool = False
    condition: str = ""
    case_type: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", "referrer_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value):
        return _as_str(value)

    @field_validator("date_of_birth", mode="before")
    @classmethod
    def _coerce_dob(cls, value):
        if value is None:
            return ""
        if hasattr(value, "isoformat"):
            return value.isoformat()
        return str(value)


class LegacyBooking(BaseModel):
    id: str
    referrer_id: str | None = None
    specialist_id: str | None = None
    examinee_id: str | None = None
    status: str | None = None
    type: str | None = None
    duration: int = 0
    location: str | None = None
    date_time: datetime | None = None
    external_appointment_id: str | None = None
    external_appointment_type_id: str | None = None
    external_calendar_id: str | None = None
    scheduled_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator(
        "id",
        "referrer_id",
        "specialist_id",
        "examinee_id",
        "external_appointment_id",
        "external_appointment_type_id",
        "external_calendar_id",
        mode="before",
    )
    @classmethod
    def _coerce_ids(cls, value):
        return _as_str(value)

    @field_validator("duration", mode="before")
    @classmethod
    def _coerce_duration(cls, value):
        if value in {"", None}:
            return 0
        return value

    @property
    def has_complete_correlation(self) -> bool:
        return bool(self.external_appointment_id and self.external_calendar_id)


class LegacyProgress(BaseModel):
    id: str
    booking_id: str
    from_status: str | None = None
    to_status: str | None = None
    changed_by: str | None = None
    reason: str | None = None
    created_at: datetime | None = None

    @field_validator("id", "booking_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value):
        return str(value)
