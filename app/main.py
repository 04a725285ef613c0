from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.v1.endpoints.public_feeds import limiter
from app.api.v1.router import router as v1_router
from app.core.db import engine
from app.core.telemetry import setup_telemetry


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await limiter.aclose()


app = FastAPI(title="Portal Sync API", version="0.1.0", lifespan=lifespan)

setup_telemetry(app, engine)
app.include_router(v1_router)
