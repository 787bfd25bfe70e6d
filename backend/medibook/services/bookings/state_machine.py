from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Protocol

from medibook.models.booking import BookingStage, BookingStatus

SYSTEM_ACTOR = "system"
STAGE_OVERRIDE_KEY = "stageOverride"

STAGE_TRANSITIONS: dict[BookingStage, frozenset[BookingStage]] = {
    BookingStage.scheduled: frozenset(
        {
            BookingStage.rescheduled,
            BookingStage.cancelled,
            BookingStage.no_show,
            BookingStage.generating_report,
        }
    ),
    BookingStage.rescheduled: frozenset(
        {
            BookingStage.rescheduled,
            BookingStage.cancelled,
            BookingStage.no_show,
            BookingStage.generating_report,
        }
    ),
    BookingStage.generating_report: frozenset({BookingStage.report_generated}),
    BookingStage.report_generated: frozenset({BookingStage.payment_received}),
    BookingStage.cancelled: frozenset(),
    BookingStage.no_show: frozenset(),
    BookingStage.payment_received: frozenset(),
}

CLOSING_STAGES = frozenset(
    {BookingStage.cancelled, BookingStage.no_show, BookingStage.payment_received}
)
TERMINAL_STAGES = frozenset(
    stage for stage, targets in STAGE_TRANSITIONS.items() if not targets
)

COARSE_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.active: frozenset({BookingStatus.closed}),
    BookingStatus.closed: frozenset({BookingStatus.archived}),
    BookingStatus.archived: frozenset(),
}


class InvalidTransitionError(ValueError):
    pass


class BookingNotEditableError(ValueError):
    pass


@dataclass(frozen=True)
class TransitionPlan:
    from_stage: BookingStage | None
    to_stage: BookingStage
    from_status: BookingStatus
    to_status: BookingStatus
    is_correction: bool = False
    stage_override: bool = False

    @property
    def changes_status(self) -> bool:
        return self.from_status != self.to_status

    @property
    def changes_stage(self) -> bool:
        return self.from_stage != self.to_stage


class HistoryEntry(Protocol):
    from_status: BookingStage | None
    to_status: BookingStage
    from_coarse_status: BookingStatus | None
    to_coarse_status: BookingStatus | None
    is_correction: bool
    changed_by: str
    details: dict


def can_transition_stage(from_stage: BookingStage | None, to_stage: BookingStage) -> bool:
    if from_stage is None:
        return True
    return to_stage in STAGE_TRANSITIONS[from_stage]


def can_transition_status(from_status: BookingStatus, to_status: BookingStatus) -> bool:
    return to_status in COARSE_TRANSITIONS[from_status]


def plan_stage_change(
    current_status: BookingStatus,
    current_stage: BookingStage | None,
    to_stage: BookingStage,
) -> TransitionPlan:
    """Plan an ordinary workflow step for a live booking.

    Closing stages carry the booking from active to closed in the same write.
    """
    if current_status != BookingStatus.active:
        raise BookingNotEditableError(
            f"Booking is {current_status.value}; progress can only change while active"
        )
    if not can_transition_stage(current_stage, to_stage):
        raise InvalidTransitionError(
            f"Cannot move booking from {current_stage.value} to {to_stage.value}"
        )
    to_status = BookingStatus.closed if to_stage in CLOSING_STAGES else current_status
    return TransitionPlan(
        from_stage=current_stage,
        to_stage=to_stage,
        from_status=current_status,
        to_status=to_status,
    )


def plan_system_cancellation(
    current_status: BookingStatus, current_stage: BookingStage | None
) -> TransitionPlan:
    """Close a live booking whose appointment was canceled upstream.

    The stage graph does not gate this: a booking already past the
    cancellable stages still closes, with ``stage_override`` set so the
    jump can be recorded on the progress entry.
    """
    if current_status != BookingStatus.active:
        raise BookingNotEditableError(
            f"Booking is {current_status.value}; only active bookings can be cancelled"
        )
    return TransitionPlan(
        from_stage=current_stage,
        to_stage=BookingStage.cancelled,
        from_status=current_status,
        to_status=BookingStatus.closed,
        stage_override=not can_transition_stage(current_stage, BookingStage.cancelled),
    )


def plan_archive(
    current_status: BookingStatus, current_stage: BookingStage | None
) -> TransitionPlan:
    if not can_transition_status(current_status, BookingStatus.archived):
        raise InvalidTransitionError(
            f"Cannot archive a booking that is {current_status.value}"
        )
    if current_stage is None:
        raise InvalidTransitionError("Cannot archive a booking with no progress history")
    return TransitionPlan(
        from_stage=current_stage,
        to_stage=current_stage,
        from_status=current_status,
        to_status=BookingStatus.archived,
    )


def plan_correction(
    current_status: BookingStatus,
    current_stage: BookingStage | None,
    to_stage: BookingStage,
    *,
    actor_id: str,
    actor_is_admin: bool,
) -> TransitionPlan:
    """Reopen a closed booking. Only a human administrator may do this."""
    if actor_id == SYSTEM_ACTOR:
        raise InvalidTransitionError("Automated reconciliation cannot reopen bookings")
    if not actor_is_admin:
        raise InvalidTransitionError("Only administrators can reopen closed bookings")
    if current_status != BookingStatus.closed:
        raise InvalidTransitionError(
            f"Only closed bookings can be reopened (booking is {current_status.value})"
        )
    if to_stage in TERMINAL_STAGES:
        raise InvalidTransitionError(
            f"A reopened booking cannot be placed in terminal stage {to_stage.value}"
        )
    return TransitionPlan(
        from_stage=current_stage,
        to_stage=to_stage,
        from_status=current_status,
        to_status=BookingStatus.active,
        is_correction=True,
    )


def _documents_coarse_transition(entry: HistoryEntry) -> bool:
    return (
        entry.from_coarse_status is not None
        and entry.to_coarse_status is not None
        and entry.from_coarse_status != entry.to_coarse_status
    )


def _is_system_cancellation(entry: HistoryEntry) -> bool:
    return (
        entry.changed_by == SYSTEM_ACTOR
        and entry.to_status == BookingStage.cancelled
        and STAGE_OVERRIDE_KEY in (entry.details or {})
        and _documents_coarse_transition(entry)
    )


def is_valid_walk(entries: Iterable[HistoryEntry]) -> bool:
    previous: BookingStage | None = None
    for entry in entries:
        if entry.is_correction or _is_system_cancellation(entry):
            previous = entry.to_status
            continue
        if previous is not None and not can_transition_stage(previous, entry.to_status):
            if entry.to_status != previous or not _documents_coarse_transition(entry):
                return False
        previous = entry.to_status
    return True


_LEGACY_STAGE_MAP: dict[str, BookingStage] = {
    "scheduled": BookingStage.scheduled,
    "rescheduled": BookingStage.rescheduled,
    "re-scheduled": BookingStage.rescheduled,
    "cancelled": BookingStage.cancelled,
    "canceled": BookingStage.cancelled,
    "no-show": BookingStage.no_show,
    "no show": BookingStage.no_show,
    "noshow": BookingStage.no_show,
    "no_show": BookingStage.no_show,
    "generating-report": BookingStage.generating_report,
    "generating report": BookingStage.generating_report,
    "generating_report": BookingStage.generating_report,
    "report-generated": BookingStage.report_generated,
    "report generated": BookingStage.report_generated,
    "report_generated": BookingStage.report_generated,
    "payment-received": BookingStage.payment_received,
    "payment received": BookingStage.payment_received,
    "payment_received": BookingStage.payment_received,
}

_LEGACY_STATUS_MAP: dict[str, BookingStatus] = {
    "active": BookingStatus.active,
    "closed": BookingStatus.closed,
    "archived": BookingStatus.archived,
    "pending": BookingStatus.active,
    "confirmed": BookingStatus.active,
    "scheduled": BookingStatus.active,
}


def _normalize_token(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", value.strip()).lower()


def normalize_legacy_stage(value: str | None) -> tuple[BookingStage, bool]:
    """Map a legacy progress string to a stage; the flag is True when defaulted."""
    stage = _LEGACY_STAGE_MAP.get(_normalize_token(value))
    if stage is None:
        return BookingStage.scheduled, True
    return stage, False


def normalize_legacy_status(value: str | None) -> tuple[BookingStatus, bool]:
    status = _LEGACY_STATUS_MAP.get(_normalize_token(value))
    if status is None:
        return BookingStatus.active, True
    return status, False
