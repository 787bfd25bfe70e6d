from __future__ import annotations

from typing import Any, Iterable, Protocol

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from medibook.services.reconciliation.types import (
    LegacyBooking,
    LegacyExaminee,
    LegacyProgress,
    LegacyReferrer,
    LegacySpecialist,
)


class LegacySource(Protocol):
    def list_specialists(self) -> list[LegacySpecialist]:
        raise NotImplementedError

    def list_referrers(self, ids: Iterable[str] | None = None) -> list[LegacyReferrer]:
        raise NotImplementedError

    def list_examinees(self, ids: Iterable[str] | None = None) -> list[LegacyExaminee]:
        raise NotImplementedError

    def list_bookings(self, ids: Iterable[str] | None = None) -> list[LegacyBooking]:
        raise NotImplementedError

    def list_progress(self, booking_ids: Iterable[str] | None = None) -> list[LegacyProgress]:
        raise NotImplementedError

    def newest_bookings(self) -> list[LegacyBooking]:
        raise NotImplementedError


_BOOKING_COLUMNS = {
    "datetime": "date_time",
    "acuity_appointment_id": "external_appointment_id",
    "acuity_appointment_type_id": "external_appointment_type_id",
    "acuity_calendar_id": "external_calendar_id",
}


def _rename(row: dict[str, Any], columns: dict[str, str]) -> dict[str, Any]:
    return {columns.get(key, key): value for key, value in row.items()}


class SqlLegacySource:
    """Read-only access to the legacy booking database."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _select(
        self,
        table: str,
        *,
        filter_column: str | None = None,
        ids: Iterable[str] | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        direction = "DESC" if descending else "ASC"
        sql = f"SELECT * FROM {table}"
        params: dict[str, Any] = {}
        stmt_binds = []
        if ids is not None:
            id_list = [str(value) for value in ids]
            if not id_list:
                return []
            sql += f" WHERE {filter_column or 'id'} IN :ids"
            params["ids"] = id_list
            stmt_binds.append(bindparam("ids", expanding=True))
        sql += f" ORDER BY created_at {direction}"
        stmt = text(sql)
        if stmt_binds:
            stmt = stmt.bindparams(*stmt_binds)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt, params).mappings()]

    def list_specialists(self) -> list[LegacySpecialist]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT id, acuity_calendar_id FROM specialists ORDER BY id ASC")
            ).mappings()
            return [
                LegacySpecialist(id=row["id"], external_calendar_id=row["acuity_calendar_id"])
                for row in rows
            ]

    def list_referrers(self, ids: Iterable[str] | None = None) -> list[LegacyReferrer]:
        return [LegacyReferrer.model_validate(row) for row in self._select("referrers", ids=ids)]

    def list_examinees(self, ids: Iterable[str] | None = None) -> list[LegacyExaminee]:
        return [LegacyExaminee.model_validate(row) for row in self._select("examinees", ids=ids)]

    def list_bookings(self, ids: Iterable[str] | None = None) -> list[LegacyBooking]:
        return [
            LegacyBooking.model_validate(_rename(row, _BOOKING_COLUMNS))
            for row in self._select("bookings", ids=ids)
        ]

    def newest_bookings(self) -> list[LegacyBooking]:
        return [
            LegacyBooking.model_validate(_rename(row, _BOOKING_COLUMNS))
            for row in self._select("bookings", descending=True)
        ]

    def list_progress(self, booking_ids: Iterable[str] | None = None) -> list[LegacyProgress]:
        rows = self._select("progress", filter_column="booking_id", ids=booking_ids)
        return [LegacyProgress.model_validate(row) for row in rows]


class InMemoryLegacySource:
    """Legacy rows held in memory, already ordered by creation time."""

    def __init__(
        self,
        *,
        specialists: list[LegacySpecialist] | None = None,
        referrers: list[LegacyReferrer] | None = None,
        examinees: list[LegacyExaminee] | None = None,
        bookings: list[LegacyBooking] | None = None,
        progress: list[LegacyProgress] | None = None,
    ) -> None:
        self.specialists = list(specialists or [])
        self.referrers = list(referrers or [])
        self.examinees = list(examinees or [])
        self.bookings = list(bookings or [])
        self.progress = list(progress or [])

    @staticmethod
    def _filter(rows, ids, attr="id"):
        if ids is None:
            return list(rows)
        wanted = {str(value) for value in ids}
        return [row for row in rows if getattr(row, attr) in wanted]

    def list_specialists(self) -> list[LegacySpecialist]:
        return list(self.specialists)

    def list_referrers(self, ids: Iterable[str] | None = None) -> list[LegacyReferrer]:
        return self._filter(self.referrers, ids)

    def list_examinees(self, ids: Iterable[str] | None = None) -> list[LegacyExaminee]:
        return self._filter(self.examinees, ids)

    def list_bookings(self, ids: Iterable[str] | None = None) -> list[LegacyBooking]:
        return self._filter(self.bookings, ids)

    def newest_bookings(self) -> list[LegacyBooking]:
        return list(reversed(self.bookings))

    def list_progress(self, booking_ids: Iterable[str] | None = None) -> list[LegacyProgress]:
        return self._filter(self.progress, booking_ids, attr="booking_id")
