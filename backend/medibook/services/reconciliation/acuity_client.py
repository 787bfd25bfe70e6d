from __future__ import annotations

import logging
from datetime import date

import httpx
from pydantic import ValidationError

from medibook.core.settings import Settings, require_acuity_credentials
from medibook.services.rate_limit import MinIntervalThrottle
from medibook.services.reconciliation.report import SyncRunStats
from medibook.services.reconciliation.types import ProviderAppointment

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    pass


class AcuityClient:
    """Read-only client for the scheduling provider's appointment listing."""

    def __init__(
        self,
        *,
        user_id: str,
        api_key: str,
        base_url: str,
        page_size: int = 1000,
        min_interval_ms: int = 120,
        timeout_seconds: float = 30.0,
        stats: SyncRunStats | None = None,
        transport: httpx.BaseTransport | None = None,
        throttle: MinIntervalThrottle | None = None,
    ) -> None:
        self.page_size = page_size
        self.stats = stats
        self.throttle = throttle or MinIntervalThrottle(
            min_interval_seconds=min_interval_ms / 1000
        )
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=httpx.BasicAuth(user_id, api_key),
            headers={"Accept": "application/json"},
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        stats: SyncRunStats | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> "AcuityClient":
        user_id, api_key = require_acuity_credentials(settings)
        return cls(
            user_id=user_id,
            api_key=api_key,
            base_url=settings.acuity_base_url,
            page_size=settings.acuity_page_size,
            min_interval_ms=settings.acuity_min_interval_ms,
            timeout_seconds=settings.acuity_timeout_seconds,
            stats=stats,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "AcuityClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _record_error(self) -> None:
        if self.stats is not None:
            self.stats.api_errors += 1

    def _get(self, path: str, params: dict[str, str]) -> list[dict]:
        self.throttle.wait()
        if self.stats is not None:
            self.stats.api_calls += 1
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            self._record_error()
            raise ProviderError(
                f"Provider request failed: {exc.response.status_code} "
                f"{exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            self._record_error()
            raise ProviderError(f"Provider request failed: {exc}") from exc
        except ValueError as exc:
            self._record_error()
            raise ProviderError("Provider returned a non-JSON response") from exc
        if not isinstance(payload, list):
            self._record_error()
            raise ProviderError("Provider returned an unexpected payload shape")
        return payload

    def _parse(self, rows: list[dict]) -> list[ProviderAppointment]:
        appointments: list[ProviderAppointment] = []
        for row in rows:
            try:
                appointments.append(ProviderAppointment.model_validate(row))
            except ValidationError as exc:
                self._record_error()
                raise ProviderError(
                    f"Provider appointment {row.get('id')} failed validation: {exc}"
                ) from exc
        return appointments

    def list_appointments(
        self,
        start_date: date,
        end_date: date,
        *,
        canceled_only: bool = False,
    ) -> list[ProviderAppointment]:
        params = {
            "minDate": start_date.isoformat(),
            "maxDate": end_date.isoformat(),
            "max": str(self.page_size),
        }
        if canceled_only:
            params["canceled"] = "true"
        else:
            params["showall"] = "true"
        logger.info(
            "Fetching provider appointments",
            extra={
                "min_date": params["minDate"],
                "max_date": params["maxDate"],
                "canceled_only": canceled_only,
            },
        )
        appointments = self._parse(self._get("/appointments", params))
        logger.info("Fetched %s provider appointments", len(appointments))
        return appointments

    def list_canceled_appointments(
        self, start_date: date, end_date: date
    ) -> list[ProviderAppointment]:
        return self.list_appointments(start_date, end_date, canceled_only=True)
