from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Literal

from opentelemetry import trace

from integrations_api.core.metrics import JOB_DELIVERIES_TOTAL
from integrations_api.core.telemetry import extract_trace_context
from integrations_api.registries.base import (
    RegistryAdapter,
    RegistryPermanentError,
    RegistryTransientError,
)
from integrations_api.schemas.jobs import JOB_STATUS_COMPLETED
from integrations_api.services.broker import Delivery, MessageBroker
from integrations_api.services.payload_cache import RawPayloadCache
from integrations_api.services.repository import (
    Repository,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Outcome = Literal["completed", "skipped", "retry", "dead_letter"]


async def process_delivery(
    delivery: Delivery,
    *,
    repository: Repository,
    adapters: dict[str, RegistryAdapter],
    payload_cache: RawPayloadCache | None = None,
) -> Outcome:
    """Run one job message to completion and settle it with the broker.

    The package upsert and job completion commit before the ack. A crash
    between the two redelivers the message, and the Completed check below
    then acks it without touching the registry again.

    Every delivery leaves here acked or nacked. Unexpected errors are nacked
    for redelivery, so they still count towards ``max_deliveries``.
    """
    message = delivery.message
    parent = extract_trace_context(delivery.headers)
    with tracer.start_as_current_span("worker.process_job", context=parent) as span:
        span.set_attribute("job.id", message.job_id)
        span.set_attribute("job.attempt", delivery.attempt)
        try:
            return await _handle(delivery, span, repository, adapters, payload_cache)
        except Exception as exc:
            if delivery.settled:
                raise
            span.record_exception(exc)
            logger.exception("unexpected error handling job id=%s attempt=%s", message.job_id, delivery.attempt)
            await delivery.nack(requeue=True, reason="worker_error")
            return "retry"


async def _handle(
    delivery: Delivery,
    span: Any,
    repository: Repository,
    adapters: dict[str, RegistryAdapter],
    payload_cache: RawPayloadCache | None,
) -> Outcome:
    message = delivery.message
    try:
        job = await repository.get_job(message.job_id)
    except RepositoryNotFoundError:
        logger.error("job message references unknown job id=%s", message.job_id)
        await delivery.nack(requeue=False, reason="job_not_found")
        return "dead_letter"
    except RepositoryUnavailableError:
        logger.exception("store unavailable while loading job id=%s", message.job_id)
        await delivery.nack(requeue=True, reason="store_unavailable")
        return "retry"

    if job["status"] == JOB_STATUS_COMPLETED:
        logger.info("job already completed id=%s; acking duplicate delivery", job["id"])
        await delivery.ack()
        return "skipped"

    adapter = adapters.get(job["registry"])
    if adapter is None:
        logger.error("no adapter for registry=%s job id=%s", job["registry"], job["id"])
        await delivery.nack(requeue=False, reason="unsupported_registry")
        return "dead_letter"

    span.set_attribute("job.registry", job["registry"])
    try:
        metadata = await adapter.fetch(job["package_name"])
    except RegistryPermanentError as exc:
        # Jobs have no failure state; dead-letter monitoring is the only signal.
        logger.warning("permanent registry failure job id=%s: %s", job["id"], exc)
        await delivery.nack(requeue=False, reason="upstream_permanent")
        return "dead_letter"
    except RegistryTransientError as exc:
        logger.warning("transient registry failure job id=%s attempt=%s: %s", job["id"], delivery.attempt, exc)
        await delivery.nack(requeue=True, reason="upstream_transient")
        return "retry"

    if payload_cache is not None and metadata.raw:
        key = RawPayloadCache.object_key(job["registry"], metadata.name, job["id"])
        await payload_cache.store_quietly(key, metadata.raw)

    try:
        await repository.record_scrape_result(
            job_id=job["id"],
            registry=job["registry"],
            name=metadata.name,
            version=metadata.version,
            downloads=metadata.downloads,
        )
    except RepositoryUnavailableError:
        logger.exception("store unavailable while completing job id=%s", job["id"])
        await delivery.nack(requeue=True, reason="store_unavailable")
        return "retry"
    except RepositoryNotFoundError:
        logger.error("job disappeared before completion id=%s", job["id"])
        await delivery.nack(requeue=False, reason="job_not_found")
        return "dead_letter"
    except RepositoryValidationError as exc:
        logger.error("registry metadata rejected by store job id=%s: %s", job["id"], exc)
        await delivery.nack(requeue=False, reason="invalid_metadata")
        return "dead_letter"

    await delivery.ack()
    logger.info(
        "job completed id=%s registry=%s package=%s version=%s downloads=%s",
        job["id"],
        job["registry"],
        metadata.name,
        metadata.version,
        metadata.downloads,
    )
    return "completed"


class WorkerPool:
    """Runs ``concurrency`` consumers, each with its own broker subscription."""

    def __init__(
        self,
        *,
        repository: Repository,
        broker: MessageBroker,
        adapters: dict[str, RegistryAdapter],
        concurrency: int = 4,
        payload_cache: RawPayloadCache | None = None,
        poll_interval_seconds: float = 0.5,
        max_backoff_seconds: float = 15.0,
        name: str = "worker",
    ) -> None:
        self.repository = repository
        self.broker = broker
        self.adapters = adapters
        self.concurrency = max(1, concurrency)
        self.payload_cache = payload_cache
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.name = name
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        for index in range(self.concurrency):
            consumer = f"{self.name}-{index}"
            self._tasks.append(asyncio.create_task(self._consume(consumer), name=consumer))
        logger.info("worker pool started consumers=%s", self.concurrency)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def wait(self) -> None:
        await asyncio.gather(*self._tasks)

    async def _consume(self, consumer: str) -> None:
        backoff = self.poll_interval_seconds
        while True:
            try:
                async for delivery in self.broker.subscribe(consumer):
                    outcome = await process_delivery(
                        delivery,
                        repository=self.repository,
                        adapters=self.adapters,
                        payload_cache=self.payload_cache,
                    )
                    JOB_DELIVERIES_TOTAL.labels(registry=delivery.message.registry, outcome=outcome).inc()
                    backoff = self.poll_interval_seconds
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception("consumer %s failed: %s; retry in %.1fs", consumer, exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
