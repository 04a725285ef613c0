from __future__ import annotations

from typing import Dict

from app.portals.base import PortalAdapter
from app.portals.manual import ManualPortalAdapter
from app.portals.oauth import OAuthPortalAdapter
from app.portals.static_token import StaticTokenPortalAdapter


_ADAPTERS: Dict[str, PortalAdapter] = {
    "oauth": OAuthPortalAdapter(),
    "static_token": StaticTokenPortalAdapter(),
    "manual": ManualPortalAdapter(),
}


def get_adapter(adapter_type: str) -> PortalAdapter:
    key = (adapter_type or "").lower().strip()
    if key not in _ADAPTERS:
        raise KeyError(f"No portal adapter registered for adapter_type={adapter_type}")
    return _ADAPTERS[key]


def register_adapter(adapter: PortalAdapter) -> PortalAdapter | None:
    """Install an adapter under its adapter_type. Returns the one it replaced."""
    previous = _ADAPTERS.get(adapter.adapter_type)
    _ADAPTERS[adapter.adapter_type] = adapter
    return previous


def supported_adapter_types() -> list[str]:
    return sorted(_ADAPTERS.keys())
