from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from medibook.core.encryption import FieldCodec
from medibook.models.base import utcnow
from medibook.models.booking import Booking, BookingStage, BookingStatus, BookingType
from medibook.models.organization import Organization, User
from medibook.models.people import Examinee, Referrer, Specialist
from medibook.services.bookings.progress import ProgressTrail
from medibook.services.bookings.repository import BookingRepository
from medibook.services.bookings.state_machine import (
    normalize_legacy_stage,
    normalize_legacy_status,
)
from medibook.services.reconciliation.identity_map import (
    CurrentSpecialist,
    IdentityMap,
    map_specialists,
)
from medibook.services.reconciliation.legacy_source import LegacySource
from medibook.services.reconciliation.report import (
    SKIP_MISSING_BOOKING,
    SKIP_MISSING_EXAMINEE,
    SKIP_MISSING_REFERRER,
    SKIP_MISSING_SPECIALIST,
    MigrationStats,
    PhaseStats,
)
from medibook.services.reconciliation.types import (
    LegacyBooking,
    LegacyExaminee,
    LegacyProgress,
    LegacyReferrer,
)

logger = logging.getLogger(__name__)


class PreconditionError(RuntimeError):
    pass


@dataclass
class DependencyChain:
    booking_ids: set[str] = field(default_factory=set)
    referrer_ids: set[str] = field(default_factory=set)
    examinee_ids: set[str] = field(default_factory=set)


def check_preconditions(
    session: Session, *, organization_id: str, system_user_id: str
) -> list[CurrentSpecialist]:
    if session.get(Organization, organization_id) is None:
        raise PreconditionError(f"Organization {organization_id} does not exist")
    if session.get(User, system_user_id) is None:
        raise PreconditionError(f"System user {system_user_id} does not exist")
    specialists = [
        CurrentSpecialist(id=row.id, external_calendar_id=row.external_calendar_id)
        for row in session.scalars(select(Specialist).order_by(Specialist.position.asc()))
    ]
    if not specialists:
        raise PreconditionError(
            "No specialists exist in the target database; create them before migrating"
        )
    return specialists


def select_test_chain(source: LegacySource) -> DependencyChain | None:
    newest = source.newest_bookings()
    if not newest:
        return None
    chosen = next(
        (
            booking
            for booking in newest
            if booking.has_complete_correlation
            and booking.referrer_id
            and booking.specialist_id
            and booking.examinee_id
        ),
        newest[0],
    )
    logger.info(
        "Test mode: migrating booking %s (appointment %s)",
        chosen.id,
        chosen.external_appointment_id,
    )
    chain = DependencyChain(booking_ids={chosen.id})
    if chosen.referrer_id:
        chain.referrer_ids.add(chosen.referrer_id)
    if chosen.examinee_id:
        chain.examinee_ids.add(chosen.examinee_id)
        for examinee in source.list_examinees(chain.examinee_ids):
            chain.referrer_ids.add(examinee.referrer_id)
    return chain


def _timestamps(record) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if record.created_at is not None:
        values["created_at"] = record.created_at
    if record.updated_at is not None:
        values["updated_at"] = record.updated_at
    return values


def _run_record(session: Session, phase: PhaseStats, record_id: str, label: str, write) -> bool:
    try:
        write()
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.exception(
            "Failed to migrate %s %s", label, record_id, extra={"record_id": record_id}
        )
        message = str(exc).splitlines()[0] if str(exc) else exc.__class__.__name__
        phase.fail(record_id, message)
        return False
    return True


def migrate_specialists(
    source: LegacySource,
    current: Iterable[CurrentSpecialist],
    identity: IdentityMap,
    stats: MigrationStats,
) -> IdentityMap:
    identity, unmapped = map_specialists(source.list_specialists(), current, identity)
    stats.specialists_mapped = len(identity.specialists)
    stats.specialists_unmapped = len(unmapped)
    if unmapped:
        logger.warning("%s legacy specialists have no calendar match", len(unmapped))
    return identity


def migrate_referrers(
    session: Session,
    repo: BookingRepository,
    source: LegacySource,
    identity: IdentityMap,
    stats: MigrationStats,
    *,
    organization_id: str,
    ids: Iterable[str] | None = None,
) -> IdentityMap:
    phase = stats.referrers
    rows = source.list_referrers(ids)
    phase.found = len(rows)
    mapping = dict(identity.referrers)
    for row in rows:
        if session.get(Referrer, row.id) is not None:
            phase.already_present += 1
            mapping[row.id] = row.id
            continue
        if _run_record(
            session,
            phase,
            row.id,
            "referrer",
            lambda row=row: _insert_referrer(repo, row, organization_id),
        ):
            phase.migrated += 1
            mapping[row.id] = row.id
    logger.info("Migrated %s referrers", phase.migrated)
    return identity.with_referrers(mapping)


def _insert_referrer(repo: BookingRepository, row: LegacyReferrer, organization_id: str) -> None:
    repo.add_referrer(
        {
            "id": row.id,
            "organization_id": organization_id,
            "user_id": None,
            "first_name": row.first_name,
            "last_name": row.last_name,
            "email": row.email or "",
            "phone": row.phone or "",
            "job_title": row.job_title or None,
            **_timestamps(row),
        }
    )


def migrate_examinees(
    session: Session,
    repo: BookingRepository,
    source: LegacySource,
    identity: IdentityMap,
    stats: MigrationStats,
    *,
    ids: Iterable[str] | None = None,
) -> IdentityMap:
    phase = stats.examinees
    rows = source.list_examinees(ids)
    phase.found = len(rows)
    mapping = dict(identity.examinees)
    for row in rows:
        referrer_id = identity.referrer(row.referrer_id)
        if referrer_id is None:
            phase.skip(SKIP_MISSING_REFERRER)
            logger.warning(
                "Skipping examinee %s: referrer %s not migrated", row.id, row.referrer_id
            )
            continue
        if session.get(Examinee, row.id) is not None:
            phase.already_present += 1
            mapping[row.id] = row.id
            continue
        if _run_record(
            session,
            phase,
            row.id,
            "examinee",
            lambda row=row, referrer_id=referrer_id: _insert_examinee(repo, row, referrer_id),
        ):
            phase.migrated += 1
            mapping[row.id] = row.id
    logger.info("Migrated %s examinees", phase.migrated)
    return identity.with_examinees(mapping)


def _insert_examinee(repo: BookingRepository, row: LegacyExaminee, referrer_id: str) -> None:
    repo.add_examinee(
        {
            "id": row.id,
            "referrer_id": referrer_id,
            "first_name": row.first_name,
            "last_name": row.last_name,
            "date_of_birth": row.date_of_birth,
            "address": row.address,
            "email": row.email,
            "phone_number": row.phone_number or "",
            "authorized_contact": row.authorized_contact,
            "condition": row.condition,
            "case_type": row.case_type,
            **_timestamps(row),
        }
    )


def migrate_bookings(
    session: Session,
    repo: BookingRepository,
    source: LegacySource,
    identity: IdentityMap,
    stats: MigrationStats,
    *,
    organization_id: str,
    system_user_id: str,
    ids: Iterable[str] | None = None,
    notes_by_booking: dict[str, dict[str, Any]] | None = None,
    with_legacy_progress: set[str] | None = None,
) -> IdentityMap:
    """Insert bookings whose referrer, specialist and examinee were migrated.

    Bookings listed in ``with_legacy_progress`` get their history from the
    progress phase. Any other booking is written together with one initial
    entry so its coarse status never lands without an audit record.
    """
    phase = stats.bookings
    rows = source.list_bookings(ids)
    phase.found = len(rows)
    mapping = dict(identity.bookings)
    trail = ProgressTrail(session)
    for row in rows:
        referrer_id = identity.referrer(row.referrer_id)
        if referrer_id is None:
            phase.skip(SKIP_MISSING_REFERRER)
            continue
        specialist_id = identity.specialist(row.specialist_id)
        if specialist_id is None:
            phase.skip(SKIP_MISSING_SPECIALIST)
            logger.warning(
                "Skipping booking %s: specialist %s has no calendar match",
                row.id,
                row.specialist_id,
            )
            continue
        examinee_id = identity.examinee(row.examinee_id)
        if examinee_id is None:
            phase.skip(SKIP_MISSING_EXAMINEE)
            continue
        if not row.external_appointment_id:
            logger.warning("Skipping booking %s: missing external appointment id", row.id)
            phase.fail(row.id, "missing external appointment id")
            continue
        if session.get(Booking, row.id) is not None:
            phase.already_present += 1
            mapping[row.id] = row.id
            continue

        status, defaulted, coerced = _booking_status(row)
        values = {
            "id": row.id,
            "organization_id": organization_id,
            "created_by_id": system_user_id,
            "referrer_id": referrer_id,
            "specialist_id": specialist_id,
            "examinee_id": examinee_id,
            "status": status,
            "type": _booking_type(row.type),
            "duration": row.duration,
            "location": row.location or "",
            "date_time": row.date_time,
            "external_appointment_id": row.external_appointment_id,
            "external_appointment_type_id": row.external_appointment_type_id,
            "external_calendar_id": row.external_calendar_id,
            "scheduled_at": row.scheduled_at,
            "completed_at": row.completed_at,
            "cancelled_at": row.cancelled_at,
            "notes": row.notes,
            **_timestamps(row),
        }
        notes = {
            "legacyStatus": row.status,
            "statusDefaulted": defaulted,
            "coercedClosed": coerced,
        }
        initial_entry = with_legacy_progress is not None and row.id not in with_legacy_progress
        initial_notes = notes if initial_entry else None
        if _run_record(
            session,
            phase,
            row.id,
            "booking",
            lambda row=row, values=values, initial_notes=initial_notes: _insert_booking(
                repo, trail, row, values, system_user_id, initial_notes
            ),
        ):
            phase.migrated += 1
            mapping[row.id] = row.id
            if defaulted:
                stats.statuses_defaulted += 1
            if coerced:
                stats.coerced_closed += 1
            if initial_entry:
                stats.initial_entries += 1
            elif (defaulted or coerced) and notes_by_booking is not None:
                notes_by_booking[row.id] = notes
    logger.info("Migrated %s bookings", phase.migrated)
    return identity.with_bookings(mapping)


def _insert_booking(
    repo: BookingRepository,
    trail: ProgressTrail,
    row: LegacyBooking,
    values: dict[str, Any],
    system_user_id: str,
    initial_notes: dict[str, Any] | None,
) -> None:
    booking = repo.add_booking(values)
    if initial_notes is None:
        return
    stage = (
        BookingStage.cancelled
        if booking.status != BookingStatus.active and booking.cancelled_at is not None
        else BookingStage.scheduled
    )
    trail.append(
        booking.id,
        to_status=stage,
        to_coarse_status=booking.status,
        changed_by=system_user_id,
        reason="Imported without legacy progress history",
        metadata={"stageInferred": True, **initial_notes},
        created_at=row.created_at or utcnow(),
    )


def _booking_status(row: LegacyBooking) -> tuple[BookingStatus, bool, bool]:
    status, defaulted = normalize_legacy_status(row.status)
    coerced = False
    if row.cancelled_at is not None and status == BookingStatus.active:
        status = BookingStatus.closed
        coerced = True
    return status, defaulted, coerced


def _booking_type(value: str | None) -> BookingType:
    if value and value.strip().lower() == BookingType.telehealth.value:
        return BookingType.telehealth
    return BookingType.in_person


def migrate_progress(
    session: Session,
    source: LegacySource,
    identity: IdentityMap,
    stats: MigrationStats,
    *,
    system_user_id: str,
    booking_ids: Iterable[str] | None = None,
    notes_by_booking: dict[str, dict[str, Any]] | None = None,
    rows: list[LegacyProgress] | None = None,
) -> None:
    phase = stats.progress
    trail = ProgressTrail(session)
    if rows is None:
        rows = source.list_progress(booking_ids)
    phase.found = len(rows)
    notes_by_booking = dict(notes_by_booking or {})

    with_history = {
        booking_id
        for booking_id in set(identity.bookings.values())
        if trail.has_history(booking_id)
    }
    for row in rows:
        booking_id = identity.booking(row.booking_id)
        if booking_id is None:
            phase.skip(SKIP_MISSING_BOOKING)
            continue
        if booking_id in with_history:
            phase.already_present += 1
            continue
        metadata = _progress_metadata(row, stats)
        metadata.update(notes_by_booking.pop(booking_id, {}))
        if _run_record(
            session,
            phase,
            row.id,
            "progress entry",
            lambda row=row, booking_id=booking_id, metadata=metadata: _insert_progress(
                trail, row, booking_id, system_user_id, metadata
            ),
        ):
            phase.migrated += 1
    for booking_id, notes in notes_by_booking.items():
        logger.warning(
            "Booking %s has no legacy progress to carry status notes %s", booking_id, notes
        )
    logger.info("Migrated %s progress entries", phase.migrated)


def _progress_metadata(row: LegacyProgress, stats: MigrationStats) -> dict[str, Any]:
    metadata: dict[str, Any] = {"legacyProgressId": row.id}
    _, defaulted = normalize_legacy_stage(row.to_status)
    if defaulted:
        stats.stages_defaulted += 1
        metadata["stageDefaulted"] = True
        metadata["legacyToStatus"] = row.to_status
    if row.from_status:
        _, from_defaulted = normalize_legacy_stage(row.from_status)
        if from_defaulted:
            metadata["fromStageDefaulted"] = True
            metadata["legacyFromStatus"] = row.from_status
    return metadata


def _insert_progress(
    trail: ProgressTrail,
    row: LegacyProgress,
    booking_id: str,
    system_user_id: str,
    metadata: dict[str, Any],
) -> None:
    to_stage, _ = normalize_legacy_stage(row.to_status)
    from_stage = normalize_legacy_stage(row.from_status)[0] if row.from_status else None
    trail.append(
        booking_id,
        from_status=from_stage,
        to_status=to_stage,
        changed_by=row.changed_by or system_user_id,
        reason=row.reason,
        metadata=metadata,
        created_at=row.created_at or utcnow(),
    )


def migrate_legacy_bookings(
    session: Session,
    source: LegacySource,
    *,
    organization_id: str,
    system_user_id: str,
    test_mode: bool = False,
    codec: FieldCodec | None = None,
) -> MigrationStats:
    """Import referrers, examinees, bookings and progress from the legacy store.

    Preconditions are checked before any write and raise PreconditionError.
    Every record is committed on its own; re-running maps rows that already
    exist instead of inserting them again.
    """
    current_specialists = check_preconditions(
        session, organization_id=organization_id, system_user_id=system_user_id
    )
    stats = MigrationStats(test_mode=test_mode)
    repo = BookingRepository(session, codec)

    chain: DependencyChain | None = None
    if test_mode:
        chain = select_test_chain(source)
        if chain is None:
            logger.warning("Test mode: legacy store has no bookings")
            return stats

    identity = migrate_specialists(source, current_specialists, IdentityMap(), stats)
    identity = migrate_referrers(
        session,
        repo,
        source,
        identity,
        stats,
        organization_id=organization_id,
        ids=chain.referrer_ids if chain else None,
    )
    identity = migrate_examinees(
        session, repo, source, identity, stats, ids=chain.examinee_ids if chain else None
    )
    booking_ids = chain.booking_ids if chain else None
    progress_rows = source.list_progress(booking_ids)
    notes_by_booking: dict[str, dict[str, Any]] = {}
    identity = migrate_bookings(
        session,
        repo,
        source,
        identity,
        stats,
        organization_id=organization_id,
        system_user_id=system_user_id,
        ids=booking_ids,
        notes_by_booking=notes_by_booking,
        with_legacy_progress={row.booking_id for row in progress_rows},
    )
    migrate_progress(
        session,
        source,
        identity,
        stats,
        system_user_id=system_user_id,
        booking_ids=booking_ids,
        notes_by_booking=notes_by_booking,
        rows=progress_rows,
    )
    return stats
