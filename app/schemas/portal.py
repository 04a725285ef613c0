from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, PrivateAttr, model_validator


PortalMethod = Literal["feed", "api", "manual"]
FeedFormat = Literal["xml", "json", "csv"]
AdapterType = Literal["oauth", "static_token", "manual"]


class FilterRules(BaseModel):
    active_only: bool = True
    sale_only: bool = False
    rent_only: bool = False
    featured_only: bool = False
    exclude_no_photos: bool = False
    exclude_no_address: bool = False
    # empty = every category passes
    categories: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def exclusive_purpose(self) -> "FilterRules":
        # sale_only wins when both are set
        if self.sale_only:
            self.rent_only = False
        return self


class PortalConfig(BaseModel):
    filters: FilterRules = Field(default_factory=FilterRules)
    # per-field value label overrides, e.g. {"type": {"casa": "House"}}
    field_mapping: dict[str, dict[str, str]] = Field(default_factory=dict)
    photo_limit: int = Field(default=20, ge=1, le=200)
    price_on_request: bool = False
    strip_html: bool = False
    site_url: str | None = None
    credentials: dict[str, Any] = Field(default_factory=dict)


class OAuthCredentials(BaseModel):
    client_id: str | None = None
    client_secret: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: int | None = None  # epoch ms
    phone: str | None = None

    # set as soon as a refresh succeeds, so a replay cut short by a timeout keeps the new tokens
    _refreshed: dict[str, Any] | None = PrivateAttr(default=None)

    def record_refresh(self, bundle: dict[str, Any]) -> None:
        self._refreshed = dict(bundle)

    @property
    def refreshed(self) -> dict[str, Any] | None:
        return self._refreshed


class StaticTokenCredentials(BaseModel):
    api_base_url: str | None = None
    client_id: str | None = None
    client_token: str | None = None
    show_address: bool = True
    show_number: bool = True


class NoCredentials(BaseModel):
    pass


PortalCredentials = OAuthCredentials | StaticTokenCredentials | NoCredentials

_CREDENTIAL_MODELS: dict[str, type[BaseModel]] = {
    "oauth": OAuthCredentials,
    "static_token": StaticTokenCredentials,
    "manual": NoCredentials,
}


def parse_credentials(adapter_type: str, raw: dict[str, Any] | None) -> PortalCredentials:
    """
    Credentials shape is chosen by the portal's adapter_type column, never by slug.
    """
    model = _CREDENTIAL_MODELS.get(adapter_type)
    if model is None:
        raise KeyError(f"No credentials model for adapter_type={adapter_type}")
    return model.model_validate(raw or {})


class PortalCreate(BaseModel):
    slug: str = Field(min_length=1, max_length=80, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    name: str = Field(min_length=1, max_length=200)
    active: bool = False
    method: PortalMethod = "feed"
    feed_format: FeedFormat = "xml"
    adapter_type: AdapterType = "manual"
    config: PortalConfig = Field(default_factory=PortalConfig)


class PortalPatch(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    active: bool | None = None
    method: PortalMethod | None = None
    feed_format: FeedFormat | None = None
    adapter_type: AdapterType | None = None
    config: PortalConfig | None = None


class PortalOut(BaseModel):
    id: str
    slug: str
    name: str
    active: bool
    method: str
    feed_format: str
    adapter_type: str
    config: dict
    feed_url: str | None


class FeedUrlOut(BaseModel):
    portal_id: str
    feed_url: str


class OAuthAuthorizeRequest(BaseModel):
    redirect_uri: str | None = None


class OAuthCallbackRequest(BaseModel):
    code: str = Field(min_length=1)
    state: str = Field(min_length=1)
    redirect_uri: str | None = None


class ConnectivityOut(BaseModel):
    ok: bool
    error: str | None = None
    account_info: dict | None = None
    total_items: int = 0
    warnings: list[str] = Field(default_factory=list)
    preview: list[dict] = Field(default_factory=list)
