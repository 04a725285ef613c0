from __future__ import annotations

from typing import Any

from app.portals.base import AdapterResult, success
from app.schemas.export import ExportRecord


class ManualPortalAdapter:
    """
    Portals maintained by hand in their own back office.
    Every action succeeds locally so the ledger still tracks intent.
    """

    adapter_type = "manual"

    def build_payload(self, record: ExportRecord, credentials: Any) -> dict[str, Any]:
        return {"id": record.id, "title": record.title}

    async def publish(self, *, payload: dict[str, Any], credentials: Any) -> AdapterResult:
        return success(detail={"mode": "manual_noop"})

    async def update(self, *, external_id: str, payload: dict[str, Any], credentials: Any) -> AdapterResult:
        return success(external_id=external_id, detail={"mode": "manual_noop"})

    async def pause(self, *, external_id: str, credentials: Any) -> AdapterResult:
        return success(external_id=external_id, detail={"mode": "manual_noop"})

    async def remove(self, *, external_id: str, credentials: Any) -> AdapterResult:
        return success(external_id=external_id, detail={"mode": "manual_noop"})

    async def test_connection(self, *, credentials: Any) -> AdapterResult:
        return success(detail={"mode": "manual", "message": "No remote API to test"})
