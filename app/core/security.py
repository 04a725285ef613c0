import hmac
import secrets


FEED_TOKEN_BYTES = 32


def generate_feed_token() -> str:
    # 32 random bytes, url-safe base64 (43 chars)
    return secrets.token_urlsafe(FEED_TOKEN_BYTES)


def tokens_match(expected: str | None, presented: str | None) -> bool:
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))
