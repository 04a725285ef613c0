from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Protocol, runtime_checkable

from app.schemas.export import ExportRecord
from app.services.http_client import HttpResult


@dataclass(frozen=True)
class AdapterResult:
    ok: bool
    retryable: bool = False
    error_code: str | None = None
    error_message: str | None = None
    detail: dict[str, Any] | None = None
    external_id: str | None = None  # remote listing id, if returned
    retry_after_seconds: int | None = None  # server-requested wait before the next attempt

    # new token bundle after a refresh; the dispatcher persists it
    refreshed_credentials: dict[str, Any] | None = None


def success(*, external_id: str | None = None, detail: dict[str, Any] | None = None, **kwargs: Any) -> AdapterResult:
    return AdapterResult(ok=True, external_id=external_id, detail=detail, **kwargs)


def terminal(error_code: str, message: str, *, detail: dict[str, Any] | None = None, **kwargs: Any) -> AdapterResult:
    return AdapterResult(ok=False, retryable=False, error_code=error_code, error_message=message, detail=detail, **kwargs)


def from_http(res: HttpResult, **kwargs: Any) -> AdapterResult:
    """Carry the transport classification of a failed call over unchanged."""
    return AdapterResult(
        ok=False,
        retryable=res.retryable,
        error_code=res.error_code,
        error_message=res.error_message,
        detail={"status_code": res.status_code, "response": res.detail},
        retry_after_seconds=res.retry_after_seconds,
        **kwargs,
    )


def with_pending_refresh(result: AdapterResult, credentials: Any) -> AdapterResult:
    """Attach tokens the adapter refreshed before its call was cut short or failed."""
    pending = getattr(credentials, "refreshed", None)
    if pending and not result.refreshed_credentials:
        return replace(result, refreshed_credentials=pending)
    return result


@runtime_checkable
class PortalAdapter(Protocol):
    """
    One implementation per remote API contract.

    Adapters never raise for remote failures and never touch the database:
    they return an AdapterResult and the dispatcher applies it to the ledger.
    build_payload raises ValidationError when the record cannot be sent.
    """

    adapter_type: str

    def build_payload(self, record: ExportRecord, credentials: Any) -> dict[str, Any]:
        ...

    async def publish(self, *, payload: dict[str, Any], credentials: Any) -> AdapterResult:
        ...

    async def update(self, *, external_id: str, payload: dict[str, Any], credentials: Any) -> AdapterResult:
        ...

    async def pause(self, *, external_id: str, credentials: Any) -> AdapterResult:
        ...

    async def remove(self, *, external_id: str, credentials: Any) -> AdapterResult:
        ...

    async def test_connection(self, *, credentials: Any) -> AdapterResult:
        """Authenticated read-only call; must not create or change remote listings."""
        ...
