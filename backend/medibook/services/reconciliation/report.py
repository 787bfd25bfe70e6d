from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

SKIP_MISSING_REFERRER = "missingReferrer"
SKIP_MISSING_SPECIALIST = "missingSpecialist"
SKIP_MISSING_EXAMINEE = "missingExaminee"
SKIP_MISSING_BOOKING = "missingBooking"
SKIP_OTHER_ERROR = "otherError"
SKIP_BOOKING_CLOSED = "bookingClosed"
SKIP_INVALID_TRANSITION = "invalidTransition"


@dataclass(frozen=True)
class AffectedBooking:
    booking_id: str
    external_appointment_id: str
    appointment_date: str
    examinee_name: str
    detail: str | None = None


@dataclass(frozen=True)
class RunFailure:
    external_id: str
    reason: str


@dataclass
class SyncRunStats:
    mode: str
    start_date: str | None = None
    end_date: str | None = None
    dry_run: bool = False
    fetched: int = 0
    matched: int = 0
    not_found: int = 0
    already_in_target_state: int = 0
    updated: int = 0
    skip_reasons: Counter[str] = field(default_factory=Counter)
    api_calls: int = 0
    api_errors: int = 0
    failures: list[RunFailure] = field(default_factory=list)
    affected: list[AffectedBooking] = field(default_factory=list)
    fatal_error: str | None = None

    def skip(self, reason: str) -> None:
        self.skip_reasons[reason] += 1

    def fail(self, external_id: str, reason: str) -> None:
        self.failures.append(RunFailure(external_id=str(external_id), reason=reason))

    @property
    def skipped(self) -> int:
        return sum(self.skip_reasons.values())

    def sorted_affected(self) -> list[AffectedBooking]:
        return sorted(self.affected, key=lambda item: (item.appointment_date, item.booking_id))

    def as_dict(self) -> dict[str, object]:
        return {
            "mode": self.mode,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "dry_run": self.dry_run,
            "fetched": self.fetched,
            "matched": self.matched,
            "not_found": self.not_found,
            "already_in_target_state": self.already_in_target_state,
            "updated": self.updated,
            "skip_reasons": dict(sorted(self.skip_reasons.items())),
            "api_calls": self.api_calls,
            "api_errors": self.api_errors,
            "failures": [
                {"external_id": failure.external_id, "reason": failure.reason}
                for failure in self.failures
            ],
            "affected": [
                {
                    "booking_id": item.booking_id,
                    "external_appointment_id": item.external_appointment_id,
                    "appointment_date": item.appointment_date,
                    "examinee_name": item.examinee_name,
                    "detail": item.detail,
                }
                for item in self.sorted_affected()
            ],
            "fatal_error": self.fatal_error,
        }

    def render_report(self) -> str:
        updated_label = "Would update" if self.dry_run else "Updated"
        lines = [f"{self.mode.title()} sync report"]
        if self.start_date or self.end_date:
            lines.append(f"Date range: {self.start_date} to {self.end_date}")
        if self.dry_run:
            lines.append("Mode: DRY RUN (no changes written)")
        lines.append("")

        affected = self.sorted_affected()
        lines.append(f"{updated_label} bookings ({len(affected)}):")
        for index, item in enumerate(affected, start=1):
            line = (
                f"  {index}. {item.appointment_date}  booking={item.booking_id}"
                f"  external={item.external_appointment_id}  examinee={item.examinee_name}"
            )
            if item.detail:
                line += f"  ({item.detail})"
            lines.append(line)
        if not affected:
            lines.append("  (none)")
        lines.append("")

        lines.append("Summary:")
        lines.append(f"  Fetched from provider: {self.fetched}")
        lines.append(f"  Matched locally: {self.matched}")
        lines.append(f"  Not found locally: {self.not_found}")
        lines.append(f"  Already in target state: {self.already_in_target_state}")
        lines.append(f"  {updated_label}: {self.updated}")
        for reason, count in sorted(self.skip_reasons.items()):
            lines.append(f"  Skipped ({reason}): {count}")
        lines.append("")
        lines.append("API statistics:")
        lines.append(f"  Calls: {self.api_calls}")
        lines.append(f"  Errors: {self.api_errors}")

        if self.fatal_error:
            lines.append("")
            lines.append(f"Run aborted: {self.fatal_error}")
        if self.failures:
            lines.append("")
            lines.append(f"Errors ({len(self.failures)}):")
            for failure in self.failures:
                lines.append(f"  - {failure.external_id}: {failure.reason}")
        return "\n".join(lines)


@dataclass
class PhaseStats:
    found: int = 0
    migrated: int = 0
    already_present: int = 0
    skip_reasons: Counter[str] = field(default_factory=Counter)
    failures: list[RunFailure] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return sum(self.skip_reasons.values())

    def skip(self, reason: str) -> None:
        self.skip_reasons[reason] += 1

    def fail(self, record_id: str, reason: str) -> None:
        self.skip_reasons[SKIP_OTHER_ERROR] += 1
        self.failures.append(RunFailure(external_id=str(record_id), reason=reason))

    def as_dict(self) -> dict[str, object]:
        return {
            "found": self.found,
            "migrated": self.migrated,
            "already_present": self.already_present,
            "skipped": self.skipped,
            "skip_reasons": dict(sorted(self.skip_reasons.items())),
            "failures": [
                {"id": failure.external_id, "reason": failure.reason}
                for failure in self.failures
            ],
        }


MIGRATION_PHASES = ("referrers", "examinees", "bookings", "progress")


@dataclass
class MigrationStats:
    test_mode: bool = False
    specialists_mapped: int = 0
    specialists_unmapped: int = 0
    coerced_closed: int = 0
    stages_defaulted: int = 0
    statuses_defaulted: int = 0
    initial_entries: int = 0
    phases: dict[str, PhaseStats] = field(
        default_factory=lambda: {name: PhaseStats() for name in MIGRATION_PHASES}
    )

    @property
    def referrers(self) -> PhaseStats:
        return self.phases["referrers"]

    @property
    def examinees(self) -> PhaseStats:
        return self.phases["examinees"]

    @property
    def bookings(self) -> PhaseStats:
        return self.phases["bookings"]

    @property
    def progress(self) -> PhaseStats:
        return self.phases["progress"]

    def as_dict(self) -> dict[str, object]:
        return {
            "test_mode": self.test_mode,
            "specialists": {
                "mapped": self.specialists_mapped,
                "unmapped": self.specialists_unmapped,
            },
            "coerced_closed": self.coerced_closed,
            "stages_defaulted": self.stages_defaulted,
            "statuses_defaulted": self.statuses_defaulted,
            "initial_entries": self.initial_entries,
            "phases": {name: self.phases[name].as_dict() for name in MIGRATION_PHASES},
        }

    def render_report(self) -> str:
        lines = ["Legacy booking migration report"]
        if self.test_mode:
            lines.append("Mode: TEST (single booking dependency chain)")
        lines.append("")
        lines.append(
            f"Specialists: {self.specialists_mapped} mapped, "
            f"{self.specialists_unmapped} unmapped"
        )
        for name in MIGRATION_PHASES:
            phase = self.phases[name]
            lines.append(
                f"{name.title()}: found={phase.found} migrated={phase.migrated} "
                f"already_present={phase.already_present} skipped={phase.skipped}"
            )
            for reason, count in sorted(phase.skip_reasons.items()):
                lines.append(f"  Skipped ({reason}): {count}")
        if self.coerced_closed:
            lines.append(f"Bookings coerced to closed (cancelled_at set): {self.coerced_closed}")
        if self.stages_defaulted or self.statuses_defaulted:
            lines.append(
                f"Defaulted legacy values: stages={self.stages_defaulted} "
                f"statuses={self.statuses_defaulted}"
            )
        if self.initial_entries:
            lines.append(
                f"Bookings without legacy progress given an initial entry: "
                f"{self.initial_entries}"
            )
        errors = [
            (name, failure)
            for name in MIGRATION_PHASES
            for failure in self.phases[name].failures
        ]
        if errors:
            lines.append("")
            lines.append(f"Errors ({len(errors)}):")
            for name, failure in errors:
                lines.append(f"  - {name} {failure.external_id}: {failure.reason}")
        return "\n".join(lines)
