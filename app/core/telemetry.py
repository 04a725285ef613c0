from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import settings


_provider_installed = False


def _install_provider(role: str) -> bool:
    global _provider_installed
    if not settings.telemetry_enabled:
        return False
    if _provider_installed:
        return True

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.namespace": "portal-sync",
            "portal_sync.role": role,
            "deployment.environment": settings.env,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{settings.otlp_endpoint}/v1/traces")))
    trace.set_tracer_provider(provider)
    _provider_installed = True
    return True


def setup_telemetry(app, engine: AsyncEngine) -> None:
    """API process: FastAPI request spans plus SQL spans for the shared engine."""
    if not _install_provider("api"):
        return
    FastAPIInstrumentor.instrument_app(app)
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def setup_worker_telemetry() -> None:
    # drain spans only; worker engines are rebuilt per run and stay uninstrumented
    _install_provider("worker")


def get_tracer() -> trace.Tracer:
    # no-op tracer until a provider is installed
    return trace.get_tracer("portal_sync")
