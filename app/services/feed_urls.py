from __future__ import annotations

from urllib.parse import urlencode


def build_feed_url(*, public_base_url: str, slug: str, token: str) -> str:
    base = public_base_url.rstrip("/")
    return f"{base}/v1/feed?{urlencode({'portal': slug, 'token': token})}"
