from __future__ import annotations

import asyncio
import logging
import socket

import httpx
from prometheus_client import start_http_server

from integrations_api.core.config import get_settings
from integrations_api.core.telemetry import configure_logging, setup_tracing, shutdown_tracing
from integrations_api.registries.adapters import build_adapters
from integrations_api.services.broker import get_broker
from integrations_api.services.payload_cache import build_payload_cache
from integrations_api.services.repository import get_repository
from integrations_api.workers.consumer import WorkerPool

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    tracing_runtime = setup_tracing(settings, component="worker")
    if settings.worker_metrics_port is not None:
        start_http_server(settings.worker_metrics_port)
        logger.info("worker metrics listening port=%s", settings.worker_metrics_port)
    repository = get_repository()
    broker = get_broker()

    async with httpx.AsyncClient(timeout=settings.registry_timeout_seconds, follow_redirects=True) as client:
        pool = WorkerPool(
            repository=repository,
            broker=broker,
            adapters=build_adapters(settings, client=client),
            concurrency=settings.worker_concurrency,
            payload_cache=build_payload_cache(settings),
            poll_interval_seconds=settings.worker_poll_interval_seconds,
            max_backoff_seconds=settings.worker_max_backoff_seconds,
            name=socket.gethostname(),
        )
        try:
            await pool.start()
            await pool.wait()
        finally:
            await pool.stop()
            await broker.close()
            await repository.close()
            shutdown_tracing(tracing_runtime)


def main() -> None:
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("worker stopped")


if __name__ == "__main__":
    main()
