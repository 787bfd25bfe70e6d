from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from medibook.models.booking import BookingStage, BookingStatus, BookingType


class ExamineeSummary(BaseModel):
    id: str
    first_name: str
    last_name: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class BookingOut(BaseModel):
    id: str
    organization_id: str
    referrer_id: str
    specialist_id: Optional[str] = None
    examinee_id: str
    examinee: Optional[ExamineeSummary] = None
    status: BookingStatus
    stage: Optional[BookingStage] = None
    type: BookingType
    duration: int
    location: str
    date_time: Optional[datetime] = None
    external_appointment_id: str
    external_appointment_type_id: Optional[str] = None
    external_calendar_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class BookingProgressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    booking_id: str
    from_status: Optional[BookingStage] = None
    to_status: BookingStage
    from_coarse_status: Optional[BookingStatus] = None
    to_coarse_status: Optional[BookingStatus] = None
    is_correction: bool = False
    changed_by: str
    reason: Optional[str] = None
    metadata: dict = Field(
        default_factory=dict, validation_alias=AliasChoices("details", "metadata")
    )
    created_at: datetime


class BookingProgressUpdate(BaseModel):
    to_status: BookingStage
    reason: Optional[str] = None


class BookingCorrection(BaseModel):
    to_status: BookingStage = BookingStage.scheduled
    reason: str


class BookingArchive(BaseModel):
    reason: Optional[str] = None


class BookingFilters(BaseModel):
    organization_id: Optional[str] = None
    referrer_id: Optional[str] = None
    specialist_id: Optional[str] = None
    examinee_id: Optional[str] = None
    status: Optional[BookingStatus] = None
    external_appointment_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    include_archived: bool = False
    limit: int = Field(default=100, ge=1, le=500)
