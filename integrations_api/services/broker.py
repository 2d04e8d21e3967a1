"""Durable job-work channel between the ingestion API and the workers.

Delivery is at-least-once. A message stays owned by one consumer until it is
acked or nacked; a nack either redelivers it with an incremented attempt
counter or, once ``max_deliveries`` is reached, moves it to the dead-letter
stream. Settled entries are deleted from the stream, and the dead-letter
stream is capped at an approximate length. Nothing here writes back into job
status.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Protocol

import redis.asyncio as redis
from pydantic import ValidationError
from redis import exceptions as redis_exc

from integrations_api.core.config import get_settings
from integrations_api.core.telemetry import inject_trace_headers
from integrations_api.schemas.messages import JobMessage

logger = logging.getLogger(__name__)


class BrokerError(Exception):
    """Base broker error."""


class BrokerUnavailableError(BrokerError):
    """Raised when the broker cannot be reached."""


class Delivery(Protocol):
    message: JobMessage
    attempt: int
    headers: dict[str, str]
    settled: bool

    async def ack(self) -> None: ...

    async def nack(self, *, requeue: bool = True, reason: str | None = None) -> None: ...


class MessageBroker(Protocol):
    async def publish(self, message: JobMessage) -> None: ...

    def subscribe(self, consumer: str) -> AsyncIterator[Delivery]: ...

    async def close(self) -> None: ...


def _encode_fields(message: JobMessage, *, attempt: int, headers: dict[str, str]) -> dict[str, str]:
    return {
        "data": message.model_dump_json(),
        "attempt": str(attempt),
        "headers": json.dumps(headers),
    }


def _decode_fields(fields: dict[Any, Any]) -> tuple[JobMessage, int, dict[str, str]]:
    decoded = {_as_str(key): _as_str(value) for key, value in fields.items()}
    message = JobMessage.model_validate_json(decoded["data"])
    try:
        attempt = max(1, int(decoded.get("attempt", "1")))
    except ValueError:
        attempt = 1
    try:
        headers = json.loads(decoded.get("headers") or "{}")
    except json.JSONDecodeError:
        headers = {}
    return message, attempt, headers if isinstance(headers, dict) else {}


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


@dataclass(slots=True)
class RedisDelivery:
    broker: RedisStreamsBroker
    entry_id: str
    consumer: str
    message: JobMessage
    attempt: int
    headers: dict[str, str] = field(default_factory=dict)
    settled: bool = False
    keepalive: asyncio.Task[None] | None = field(default=None, repr=False)

    async def ack(self) -> None:
        self.settled = True
        self.release()
        await self.broker._ack(self.entry_id)

    async def nack(self, *, requeue: bool = True, reason: str | None = None) -> None:
        self.settled = True
        self.release()
        await self.broker._nack(self, requeue=requeue, reason=reason)

    def release(self) -> None:
        if self.keepalive is not None:
            self.keepalive.cancel()
            self.keepalive = None


class RedisStreamsBroker:
    def __init__(
        self,
        redis_url: str,
        *,
        stream: str,
        group: str,
        dead_letter_stream: str,
        max_deliveries: int,
        block_ms: int = 5000,
        claim_idle_ms: int = 60000,
        dead_letter_maxlen: int = 10000,
        client: redis.Redis | None = None,
    ) -> None:
        self.stream = stream
        self.group = group
        self.dead_letter_stream = dead_letter_stream
        self.max_deliveries = max(1, max_deliveries)
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self.dead_letter_maxlen = dead_letter_maxlen
        self._client = client if client is not None else redis.Redis.from_url(redis_url)
        self._group_ready = False

    async def close(self) -> None:
        await self._client.aclose()

    async def publish(self, message: JobMessage) -> None:
        fields = _encode_fields(message, attempt=1, headers=inject_trace_headers())
        try:
            await self._client.xadd(self.stream, fields)
        except redis_exc.ConnectionError as exc:
            raise BrokerUnavailableError("broker unavailable") from exc

    async def subscribe(self, consumer: str) -> AsyncIterator[RedisDelivery]:
        await self._ensure_group()
        while True:
            try:
                entries = await self._claim_stale(consumer)
                reclaimed = bool(entries)
                if not reclaimed:
                    response = await self._client.xreadgroup(
                        self.group,
                        consumer,
                        {self.stream: ">"},
                        count=1,
                        block=self.block_ms,
                    )
                    entries = [entry for _, stream_entries in response or [] for entry in stream_entries]
            except redis_exc.ConnectionError as exc:
                raise BrokerUnavailableError("broker unavailable") from exc

            for entry_id, fields in entries:
                delivery = await self._to_delivery(_as_str(entry_id), fields, consumer)
                if delivery is None:
                    continue
                if reclaimed:
                    delivery.attempt += await self._redeliveries(delivery.entry_id)
                    if delivery.attempt > self.max_deliveries:
                        await self._dead_letter(delivery, "max_deliveries_exceeded")
                        continue
                delivery.keepalive = asyncio.create_task(self._keep_owned(delivery))
                try:
                    yield delivery
                finally:
                    delivery.release()

    async def _ensure_group(self) -> None:
        if self._group_ready:
            return
        try:
            await self._client.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except redis_exc.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._group_ready = True

    async def _claim_stale(self, consumer: str) -> list[tuple[Any, dict[Any, Any]]]:
        # Entries left pending by a crashed consumer are taken over after claim_idle_ms.
        result = await self._client.xautoclaim(
            self.stream,
            self.group,
            consumer,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=1,
        )
        claimed = result[1] if len(result) > 1 else []
        return [(entry_id, fields) for entry_id, fields in claimed if fields]

    async def _redeliveries(self, entry_id: str) -> int:
        """Deliveries of this entry beyond the first, as counted by the group."""
        pending = await self._client.xpending_range(self.stream, self.group, min=entry_id, max=entry_id, count=1)
        if not pending:
            return 0
        return max(0, int(pending[0]["times_delivered"]) - 1)

    async def _keep_owned(self, delivery: RedisDelivery) -> None:
        # JUSTID resets idle time without bumping the delivery counter.
        interval = max(self.claim_idle_ms / 3000, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                await self._client.xclaim(
                    self.stream,
                    self.group,
                    delivery.consumer,
                    min_idle_time=0,
                    message_ids=[delivery.entry_id],
                    justid=True,
                )
            except redis_exc.RedisError as exc:
                logger.warning("could not refresh ownership of entry id=%s: %s", delivery.entry_id, exc)

    async def _to_delivery(self, entry_id: str, fields: dict[Any, Any], consumer: str) -> RedisDelivery | None:
        try:
            message, attempt, headers = _decode_fields(fields)
        except (KeyError, ValidationError) as exc:
            logger.error("dropping malformed stream entry id=%s to dead-letter: %s", entry_id, exc)
            raw = {_as_str(key): _as_str(value) for key, value in fields.items()}
            raw["reason"] = "malformed_message"
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.xadd(self.dead_letter_stream, raw, maxlen=self.dead_letter_maxlen, approximate=True)
                pipe.xack(self.stream, self.group, entry_id)
                pipe.xdel(self.stream, entry_id)
                await pipe.execute()
            return None
        return RedisDelivery(
            broker=self,
            entry_id=entry_id,
            consumer=consumer,
            message=message,
            attempt=attempt,
            headers=headers,
        )

    async def _ack(self, entry_id: str) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.xack(self.stream, self.group, entry_id)
            pipe.xdel(self.stream, entry_id)
            await pipe.execute()

    async def _nack(self, delivery: RedisDelivery, *, requeue: bool, reason: str | None) -> None:
        if not requeue or delivery.attempt >= self.max_deliveries:
            await self._dead_letter(delivery, reason or "max_deliveries_exceeded")
            return
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.xadd(
                self.stream,
                _encode_fields(delivery.message, attempt=delivery.attempt + 1, headers=delivery.headers),
            )
            pipe.xack(self.stream, self.group, delivery.entry_id)
            pipe.xdel(self.stream, delivery.entry_id)
            await pipe.execute()

    async def _dead_letter(self, delivery: RedisDelivery, reason: str) -> None:
        fields = _encode_fields(delivery.message, attempt=delivery.attempt, headers=delivery.headers)
        fields["reason"] = reason
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.xadd(self.dead_letter_stream, fields, maxlen=self.dead_letter_maxlen, approximate=True)
            pipe.xack(self.stream, self.group, delivery.entry_id)
            pipe.xdel(self.stream, delivery.entry_id)
            await pipe.execute()
        logger.warning(
            "job message dead-lettered job_id=%s attempt=%s reason=%s",
            delivery.message.job_id,
            delivery.attempt,
            reason,
        )


@dataclass(slots=True)
class InMemoryDelivery:
    broker: InMemoryBroker
    message: JobMessage
    attempt: int
    headers: dict[str, str] = field(default_factory=dict)
    settled: bool = False

    async def ack(self) -> None:
        self.settled = True
        self.broker.acked.append(self.message)

    async def nack(self, *, requeue: bool = True, reason: str | None = None) -> None:
        self.settled = True
        if requeue and self.attempt < self.broker.max_deliveries:
            self.broker._enqueue(self.message, attempt=self.attempt + 1, headers=self.headers)
            return
        self.broker.dead_letters.append((self.message, reason or "max_deliveries_exceeded"))
        logger.warning(
            "job message dead-lettered job_id=%s attempt=%s reason=%s",
            self.message.job_id,
            self.attempt,
            reason or "max_deliveries_exceeded",
        )


class InMemoryBroker:
    """Single-process broker used by tests and the embedded worker.

    Consumers poll a shared deque, so it works across event loops. Only the
    latest ``history_size`` acked and dead-lettered messages are kept.
    """

    def __init__(
        self,
        *,
        max_deliveries: int = 5,
        poll_interval_seconds: float = 0.05,
        history_size: int = 1000,
    ) -> None:
        self.max_deliveries = max(1, max_deliveries)
        self.poll_interval_seconds = poll_interval_seconds
        self.acked: deque[JobMessage] = deque(maxlen=history_size)
        self.dead_letters: deque[tuple[JobMessage, str]] = deque(maxlen=history_size)
        self._queue: deque[tuple[JobMessage, int, dict[str, str]]] = deque()
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def close(self) -> None:
        return None

    async def publish(self, message: JobMessage) -> None:
        self._enqueue(message, attempt=1, headers=inject_trace_headers())

    def _enqueue(self, message: JobMessage, *, attempt: int, headers: dict[str, str]) -> None:
        with self._lock:
            self._queue.append((message, attempt, dict(headers)))

    def get_nowait(self) -> InMemoryDelivery | None:
        with self._lock:
            if not self._queue:
                return None
            message, attempt, headers = self._queue.popleft()
        return InMemoryDelivery(broker=self, message=message, attempt=attempt, headers=headers)

    async def subscribe(self, consumer: str) -> AsyncIterator[InMemoryDelivery]:
        while True:
            delivery = self.get_nowait()
            if delivery is None:
                await asyncio.sleep(self.poll_interval_seconds)
                continue
            yield delivery


@lru_cache
def get_broker() -> MessageBroker:
    settings = get_settings()
    if not settings.redis_url:
        logger.warning("IA_REDIS_URL not set; using in-memory broker")
        return InMemoryBroker(
            max_deliveries=settings.broker_max_deliveries,
            poll_interval_seconds=settings.worker_poll_interval_seconds,
        )
    return RedisStreamsBroker(
        settings.redis_url,
        stream=settings.broker_stream,
        group=settings.broker_group,
        dead_letter_stream=settings.broker_dead_letter_stream,
        max_deliveries=settings.broker_max_deliveries,
        block_ms=settings.broker_block_ms,
        claim_idle_ms=settings.broker_claim_idle_ms,
        dead_letter_maxlen=settings.broker_dead_letter_maxlen,
    )
