import argparse
import asyncio
import logging

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from worker.celery_app import celery
from app.core.config import settings
from app.core.telemetry import setup_worker_telemetry
import app.models  # noqa: F401  # ensures Models are registered
from app.services.dispatcher import drain


log = logging.getLogger(__name__)


async def _drain_portal_jobs(batch_size: int | None) -> dict:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)

    try:
        async with Session() as db:
            res = await drain(db, batch_size=batch_size)
    finally:
        await engine.dispose()

    return {
        "claimed": res.claimed,
        "reclaimed": res.reclaimed,
        "succeeded": res.succeeded,
        "failed": res.failed,
        "retried": res.retried,
        "errors": res.errors,
    }


@celery.task(name="worker.tasks.drain_portal_jobs")
def drain_portal_jobs(batch_size: int | None = None) -> dict:
    setup_worker_telemetry()
    # own engine per run: asyncio.run creates a fresh loop each time
    out = asyncio.run(_drain_portal_jobs(batch_size))
    log.info(
        "drain_portal_jobs: claimed=%d succeeded=%d retried=%d failed=%d",
        out["claimed"], out["succeeded"], out["retried"], out["failed"],
    )
    return out


if __name__ == "__main__":
    # one drain without a broker, e.g. from cron
    logging.basicConfig(level=logging.INFO)
    p = argparse.ArgumentParser(description="Drain due portal jobs once")
    p.add_argument("--batch-size", type=int, default=None)
    args = p.parse_args()
    setup_worker_telemetry()
    out = asyncio.run(_drain_portal_jobs(args.batch_size))
    log.info("drain: %s", out)
