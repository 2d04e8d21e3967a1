from contextlib import asynccontextmanager
import logging
import time

import httpx
from fastapi import FastAPI
from starlette.requests import Request

from integrations_api.api.errors import install_error_handlers
from integrations_api.api.router import api_router
from integrations_api.core.config import get_settings
from integrations_api.core.metrics import (
    HTTP_REQUESTS_DURATION_SECONDS,
    HTTP_REQUESTS_PENDING,
    HTTP_REQUESTS_TOTAL,
    endpoint_label,
)
from integrations_api.core.telemetry import (
    TracingRuntime,
    configure_logging,
    instrument_app,
    setup_tracing,
    shutdown_tracing,
    uninstrument_app,
)
from integrations_api.registries.adapters import build_adapters
from integrations_api.services.broker import get_broker
from integrations_api.services.payload_cache import build_payload_cache
from integrations_api.services.repository import get_repository
from integrations_api.workers.consumer import WorkerPool

settings = get_settings()
_tracing_runtime: TracingRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime_settings = get_settings()
    pool: WorkerPool | None = None
    client: httpx.AsyncClient | None = None
    if runtime_settings.embedded_worker:
        client = httpx.AsyncClient(timeout=runtime_settings.registry_timeout_seconds, follow_redirects=True)
        pool = WorkerPool(
            repository=get_repository(),
            broker=get_broker(),
            adapters=build_adapters(runtime_settings, client=client),
            concurrency=runtime_settings.worker_concurrency,
            payload_cache=build_payload_cache(runtime_settings),
            poll_interval_seconds=runtime_settings.worker_poll_interval_seconds,
            max_backoff_seconds=runtime_settings.worker_max_backoff_seconds,
            name="embedded",
        )
        await pool.start()
    app.state.worker_pool = pool
    try:
        yield
    finally:
        if pool is not None:
            await pool.stop()
        if client is not None:
            await client.aclose()
        if _tracing_runtime is not None:
            uninstrument_app(app, _tracing_runtime)
            shutdown_tracing(_tracing_runtime)
        # Ensure the asyncpg pool and broker connection shut down on app teardown.
        await get_repository().close()
        await get_broker().close()
        get_repository.cache_clear()
        get_broker.cache_clear()


configure_logging(settings.log_level)
app = FastAPI(title=settings.app_name, lifespan=lifespan)
install_error_handlers(app)
_tracing_runtime = setup_tracing(settings, component="api")
instrument_app(app, _tracing_runtime)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    endpoint = endpoint_label(request)
    pending = HTTP_REQUESTS_PENDING.labels(method=request.method, endpoint=endpoint)
    pending.inc()
    started_at = time.perf_counter()
    try:
        response = await call_next(request)
    finally:
        pending.dec()
    elapsed = time.perf_counter() - started_at
    status_label = str(response.status_code)
    HTTP_REQUESTS_TOTAL.labels(method=request.method, endpoint=endpoint, status=status_label).inc()
    HTTP_REQUESTS_DURATION_SECONDS.labels(method=request.method, endpoint=endpoint, status=status_label).observe(
        elapsed
    )
    elapsed_ms = elapsed * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
