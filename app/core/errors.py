from __future__ import annotations


class PortalSyncError(Exception):
    """Base class for distribution-engine errors."""

    code = "PORTAL_SYNC_ERROR"


class PortalNotFoundError(PortalSyncError):
    code = "PORTAL_NOT_FOUND"


class AuthError(PortalSyncError):
    """Bad or rotated feed token, or expired/invalid remote credentials."""

    code = "AUTH_ERROR"


class ValidationError(PortalSyncError):
    """A listing or config cannot be turned into a valid request. Never retried."""

    code = "VALIDATION_ERROR"


class TransientError(PortalSyncError):
    """Timeout, 5xx, rate limit. Retried with backoff.

    Adapters may raise it for failures they detect outside an HTTP response.
    """

    code = "TRANSIENT_ERROR"


class ExhaustedRetryError(PortalSyncError):
    """A job ran out of attempts. Only an explicit re-enqueue retries it."""

    code = "EXHAUSTED_RETRIES"
