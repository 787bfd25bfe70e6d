from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from medibook.core.encryption import FieldDecodeError
from medibook.db.session import get_db
from medibook.models.booking import BookingStatus
from medibook.schemas.booking import (
    BookingArchive,
    BookingCorrection,
    BookingFilters,
    BookingOut,
    BookingProgressOut,
    BookingProgressUpdate,
)
from medibook.services.bookings.service import (
    BookingNotFoundError,
    BookingService,
    UnknownActorError,
)
from medibook.services.bookings.state_machine import (
    SYSTEM_ACTOR,
    BookingNotEditableError,
    InvalidTransitionError,
)

router = APIRouter(prefix="/bookings", tags=["bookings"])


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    return BookingService(db)


def get_actor_id(x_actor_id: str = Header(...)) -> str:
    actor_id = x_actor_id.strip()
    if not actor_id or actor_id == SYSTEM_ACTOR:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid actor")
    return actor_id


def _raise_http(exc: Exception):
    if isinstance(exc, BookingNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, UnknownActorError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, BookingNotEditableError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        )
    if isinstance(exc, FieldDecodeError):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stored booking data could not be decrypted",
        )
    raise exc


_DOMAIN_ERRORS = (
    BookingNotFoundError,
    UnknownActorError,
    BookingNotEditableError,
    InvalidTransitionError,
    FieldDecodeError,
)


@router.get("", response_model=list[BookingOut])
def list_bookings(
    service: BookingService = Depends(get_booking_service),
    organization_id: str | None = Query(default=None),
    referrer_id: str | None = Query(default=None),
    specialist_id: str | None = Query(default=None),
    status_filter: BookingStatus | None = Query(default=None, alias="status"),
    external_appointment_id: str | None = Query(default=None),
    from_dt: datetime | None = Query(default=None, alias="from"),
    to_dt: datetime | None = Query(default=None, alias="to"),
    include_archived: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
):
    filters = BookingFilters(
        organization_id=organization_id,
        referrer_id=referrer_id,
        specialist_id=specialist_id,
        status=status_filter,
        external_appointment_id=external_appointment_id,
        date_from=from_dt,
        date_to=to_dt,
        include_archived=include_archived,
        limit=limit,
    )
    try:
        return service.list_bookings(filters)
    except _DOMAIN_ERRORS as exc:
        _raise_http(exc)


@router.get("/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    try:
        return service.get_booking_by_id(booking_id)
    except _DOMAIN_ERRORS as exc:
        _raise_http(exc)


@router.get("/{booking_id}/progress", response_model=list[BookingProgressOut])
def get_booking_progress(
    booking_id: str, service: BookingService = Depends(get_booking_service)
):
    try:
        return service.get_booking_history(booking_id)
    except _DOMAIN_ERRORS as exc:
        _raise_http(exc)


@router.post("/{booking_id}/progress", response_model=BookingOut)
def update_booking_progress(
    booking_id: str,
    payload: BookingProgressUpdate,
    service: BookingService = Depends(get_booking_service),
    actor_id: str = Depends(get_actor_id),
):
    try:
        return service.update_booking_progress(
            booking_id, payload.to_status, payload.reason, actor_id
        )
    except _DOMAIN_ERRORS as exc:
        _raise_http(exc)


@router.post("/{booking_id}/archive", response_model=BookingOut)
def archive_booking(
    booking_id: str,
    payload: BookingArchive,
    service: BookingService = Depends(get_booking_service),
    actor_id: str = Depends(get_actor_id),
):
    try:
        return service.archive_booking(booking_id, payload.reason, actor_id)
    except _DOMAIN_ERRORS as exc:
        _raise_http(exc)


@router.post("/{booking_id}/correction", response_model=BookingOut)
def correct_booking(
    booking_id: str,
    payload: BookingCorrection,
    service: BookingService = Depends(get_booking_service),
    actor_id: str = Depends(get_actor_id),
):
    try:
        return service.correct_booking_status(
            booking_id, payload.to_status, payload.reason, actor_id
        )
    except _DOMAIN_ERRORS as exc:
        _raise_http(exc)
