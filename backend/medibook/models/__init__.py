from medibook.models.base import Base
from medibook.models.organization import Organization, User
from medibook.models.people import Examinee, Referrer, Specialist
from medibook.models.booking import (
    Booking,
    BookingProgress,
    BookingStage,
    BookingStatus,
    BookingType,
    ProgressEntryImmutableError,
)
from medibook.models.document import Document, DocumentCategory, DocumentSection

__all__ = [
    "Base",
    "Organization",
    "User",
    "Referrer",
    "Examinee",
    "Specialist",
    "Booking",
    "BookingProgress",
    "BookingStage",
    "BookingStatus",
    "BookingType",
    "ProgressEntryImmutableError",
    "Document",
    "DocumentCategory",
    "DocumentSection",
]
