from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Iterable, Mapping

from medibook.services.reconciliation.types import LegacySpecialist

logger = logging.getLogger(__name__)


def _frozen(values: Mapping[str, str] | None = None) -> Mapping[str, str]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class IdentityMap:
    """Legacy id to current id lookups for one migration run.

    Each phase returns a new map with its tier added; earlier tiers are never
    rewritten.
    """

    specialists: Mapping[str, str] = field(default_factory=_frozen)
    referrers: Mapping[str, str] = field(default_factory=_frozen)
    examinees: Mapping[str, str] = field(default_factory=_frozen)
    bookings: Mapping[str, str] = field(default_factory=_frozen)

    def with_specialists(self, mapping: Mapping[str, str]) -> "IdentityMap":
        return replace(self, specialists=_frozen(mapping))

    def with_referrers(self, mapping: Mapping[str, str]) -> "IdentityMap":
        return replace(self, referrers=_frozen(mapping))

    def with_examinees(self, mapping: Mapping[str, str]) -> "IdentityMap":
        return replace(self, examinees=_frozen(mapping))

    def with_bookings(self, mapping: Mapping[str, str]) -> "IdentityMap":
        return replace(self, bookings=_frozen(mapping))

    def specialist(self, legacy_id: str | None) -> str | None:
        return self.specialists.get(legacy_id) if legacy_id else None

    def referrer(self, legacy_id: str | None) -> str | None:
        return self.referrers.get(legacy_id) if legacy_id else None

    def examinee(self, legacy_id: str | None) -> str | None:
        return self.examinees.get(legacy_id) if legacy_id else None

    def booking(self, legacy_id: str | None) -> str | None:
        return self.bookings.get(legacy_id) if legacy_id else None


@dataclass(frozen=True)
class CurrentSpecialist:
    id: str
    external_calendar_id: str


def map_specialists(
    legacy: Iterable[LegacySpecialist],
    current: Iterable[CurrentSpecialist],
    identity: IdentityMap | None = None,
) -> tuple[IdentityMap, list[LegacySpecialist]]:
    """Pair specialists across systems by calendar id.

    Legacy specialist keys are never reused; a legacy row without a calendar
    match is returned as unmapped.
    """
    by_calendar = {
        str(row.external_calendar_id): row.id
        for row in current
        if row.external_calendar_id
    }
    mapping: dict[str, str] = {}
    unmapped: list[LegacySpecialist] = []
    for row in legacy:
        target = by_calendar.get(row.external_calendar_id) if row.external_calendar_id else None
        if target is None:
            unmapped.append(row)
            logger.warning(
                "No current specialist matches legacy specialist %s (calendar %s)",
                row.id,
                row.external_calendar_id,
            )
            continue
        mapping[row.id] = target
    logger.info("Mapped %s specialists via calendar id", len(mapping))
    return (identity or IdentityMap()).with_specialists(mapping), unmapped
