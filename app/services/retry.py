from app.core.config import settings


def compute_backoff_seconds(attempt: int, base: int | None = None, cap: int | None = None) -> int:
    # exponential backoff, no jitter: delay must grow strictly with attempts until the cap
    base = settings.job_backoff_base_seconds if base is None else base
    cap = settings.job_backoff_cap_seconds if cap is None else cap
    return min(cap, base * (2 ** max(0, attempt - 1)))
