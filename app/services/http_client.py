from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Literal

import time

import httpx


HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]

RETRYABLE_STATUS = (408, 425, 429, 500, 502, 503, 504)
AUTH_STATUS = (401, 403)
TERMINAL_STATUS = (400, 404, 405, 409, 410, 413, 422)

# longer waits are left to the normal backoff schedule
RETRY_AFTER_MAX_SECONDS = 3600


@dataclass(frozen=True)
class HttpResult:
    ok: bool
    status_code: int | None
    detail: dict[str, Any]

    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False
    auth_failed: bool = False

    retry_after_seconds: int | None = None
    elapsed_ms: int | None = None


def classify_status(status_code: int) -> tuple[bool, bool]:
    """Returns (retryable, auth_failed) for a non-2xx status."""
    if status_code in AUTH_STATUS:
        return False, True
    if status_code in TERMINAL_STATUS:
        return False, False
    if status_code in RETRYABLE_STATUS:
        return True, False
    # unknown codes: retry, the job's max_attempts caps it
    return True, False


def parse_retry_after(value: str | None) -> int | None:
    # only the delta-seconds form; HTTP dates fall back to backoff
    if not value or not value.strip().isdigit():
        return None
    return min(int(value.strip()), RETRY_AFTER_MAX_SECONDS)


def _cap_text(s: str, *, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + f"...(truncated, {len(s)} chars)"


def _body(resp: httpx.Response, *, max_chars: int) -> dict[str, Any]:
    ct = (resp.headers.get("content-type") or "").lower()
    if "application/json" in ct or ct.endswith("+json"):
        try:
            parsed = resp.json()
        except ValueError:
            return {"raw": _cap_text(resp.text, max_chars=max_chars)}
        # portals answer with lists or bare strings too
        return parsed if isinstance(parsed, dict) else {"data": parsed}
    return {"raw": _cap_text(resp.text, max_chars=max_chars), "content_type": resp.headers.get("content-type")}


def _transport_failure(code: str, message: str) -> HttpResult:
    return HttpResult(
        ok=False,
        status_code=None,
        detail={"error": code.lower()},
        error_code=code,
        error_message=message,
        retryable=True,
    )


class PortalHttpClient:
    """
    HTTP client shared by the portal adapters.

    Never raises for remote failures: every call returns an HttpResult that
    says whether the failure is worth retrying and whether the credentials
    were refused. Retries and backoff belong to the job queue.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        max_response_body_chars: int = 20_000,
        default_headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._max_body = max_response_body_chars
        self._default_headers = dict(default_headers or {})
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request_json(
        self,
        *,
        method: HttpMethod,
        url: str,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        form_body: Mapping[str, str] | None = None,
        request_id: str | None = None,
    ) -> HttpResult:
        h = {**self._default_headers, **dict(headers or {})}
        if request_id:
            h.setdefault("X-Request-Id", request_id)

        started = time.monotonic()
        try:
            resp = await self._client.request(
                method=method,
                url=url,
                headers=h,
                params=dict(params or {}),
                json=json_body,
                data=dict(form_body) if form_body is not None else None,
            )
        except httpx.TimeoutException as e:
            return _transport_failure("TIMEOUT", f"timeout: {e}")
        except httpx.RequestError as e:
            # DNS, refused connection, TLS
            return _transport_failure("REQUEST_ERROR", f"request error: {e}")

        detail = _body(resp, max_chars=self._max_body)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if resp.is_success:
            return HttpResult(ok=True, status_code=resp.status_code, detail=detail, elapsed_ms=elapsed_ms)

        retryable, auth_failed = classify_status(resp.status_code)
        return HttpResult(
            ok=False,
            status_code=resp.status_code,
            detail=detail,
            error_code="AUTH_FAILED" if auth_failed else f"HTTP_{resp.status_code}",
            error_message=f"HTTP {resp.status_code}",
            retryable=retryable,
            auth_failed=auth_failed,
            retry_after_seconds=parse_retry_after(resp.headers.get("retry-after")) if retryable else None,
            elapsed_ms=elapsed_ms,
        )

    # helpers
    async def get_json(self, *, url: str, headers: Mapping[str, str] | None = None, params: Mapping[str, str] | None = None) -> HttpResult:
        return await self.request_json(method="GET", url=url, headers=headers, params=params)

    async def post_json(self, *, url: str, headers: Mapping[str, str] | None = None, json_body: Any = None, request_id: str | None = None) -> HttpResult:
        return await self.request_json(method="POST", url=url, headers=headers, json_body=json_body, request_id=request_id)

    async def post_form(self, *, url: str, form_body: Mapping[str, str], headers: Mapping[str, str] | None = None) -> HttpResult:
        return await self.request_json(method="POST", url=url, headers=headers, form_body=form_body)

    async def put_json(self, *, url: str, headers: Mapping[str, str] | None = None, json_body: Any = None, request_id: str | None = None) -> HttpResult:
        return await self.request_json(method="PUT", url=url, headers=headers, json_body=json_body, request_id=request_id)

    async def patch_json(self, *, url: str, headers: Mapping[str, str] | None = None, json_body: Any = None, request_id: str | None = None) -> HttpResult:
        return await self.request_json(method="PATCH", url=url, headers=headers, json_body=json_body, request_id=request_id)

    async def delete(self, *, url: str, headers: Mapping[str, str] | None = None, request_id: str | None = None) -> HttpResult:
        return await self.request_json(method="DELETE", url=url, headers=headers, request_id=request_id)
