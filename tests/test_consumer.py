from __future__ import annotations

import asyncio
from typing import Any

from integrations_api.registries.base import PackageMetadata, RegistryPermanentError, RegistryTransientError
from integrations_api.schemas.messages import JobMessage
from integrations_api.services.broker import InMemoryBroker
from integrations_api.services.pagination import PageRequest
from integrations_api.services.repository import RepositoryUnavailableError, RepositoryValidationError
from integrations_api.services.store import InMemoryRepository
from integrations_api.workers.consumer import WorkerPool, process_delivery


class FakeAdapter:
    registry = "crates.io"

    def __init__(self, results: list[Any]) -> None:
        self.results = list(results)
        self.calls: list[str] = []

    async def fetch(self, package_name: str) -> PackageMetadata:
        self.calls.append(package_name)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FlakyRepository(InMemoryRepository):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def record_scrape_result(self, **kwargs: Any) -> dict[str, Any]:
        if self.failures > 0:
            self.failures -= 1
            raise RepositoryUnavailableError("database unavailable")
        return await super().record_scrape_result(**kwargs)


class BrokenConnectionRepository(InMemoryRepository):
    async def get_job(self, job_id: str) -> dict[str, Any]:
        raise ConnectionResetError("connection reset by peer")


class RejectingRepository(InMemoryRepository):
    async def record_scrape_result(self, **kwargs: Any) -> dict[str, Any]:
        raise RepositoryValidationError("downloads must be non-negative")


def _submit(repository: InMemoryRepository, broker: InMemoryBroker, package_name: str = "tokio") -> dict[str, Any]:
    job = asyncio.run(repository.create_job(registry="crates.io", package_name=package_name, trace_id=None))
    asyncio.run(
        broker.publish(JobMessage(job_id=job["id"], registry="crates.io", package_name=package_name))
    )
    return job


def _drain(broker: InMemoryBroker, repository: InMemoryRepository, adapters: dict[str, Any]) -> list[str]:
    outcomes: list[str] = []

    async def run() -> None:
        while (delivery := broker.get_nowait()) is not None:
            outcomes.append(await process_delivery(delivery, repository=repository, adapters=adapters))

    asyncio.run(run())
    return outcomes


def test_successful_delivery_upserts_package_completes_job_and_acks() -> None:
    repository = InMemoryRepository()
    broker = InMemoryBroker()
    job = _submit(repository, broker)
    adapter = FakeAdapter([PackageMetadata(name="tokio", version="1.45.0", downloads=100)])

    outcomes = _drain(broker, repository, {"crates.io": adapter})

    assert outcomes == ["completed"]
    assert asyncio.run(repository.get_job(job["id"]))["status"] == "Completed"
    packages = asyncio.run(repository.list_packages(PageRequest(limit=10)))
    assert [(row["registry"], row["name"], row["version"], row["downloads"]) for row in packages] == [
        ("crates.io", "tokio", "1.45.0", 100)
    ]
    assert [message.job_id for message in broker.acked] == [job["id"]]


def test_duplicate_delivery_of_completed_job_is_acked_without_fetching() -> None:
    repository = InMemoryRepository()
    broker = InMemoryBroker()
    job = _submit(repository, broker)
    # Simulate at-least-once delivery of the same work message.
    asyncio.run(broker.publish(JobMessage(job_id=job["id"], registry="crates.io", package_name="tokio")))
    adapter = FakeAdapter([PackageMetadata(name="tokio", version="1.45.0", downloads=100)])

    outcomes = _drain(broker, repository, {"crates.io": adapter})

    assert outcomes == ["completed", "skipped"]
    assert adapter.calls == ["tokio"]
    assert len(asyncio.run(repository.list_packages(PageRequest(limit=10)))) == 1
    assert len(broker.acked) == 2
    assert list(broker.dead_letters) == []


def test_two_jobs_for_same_package_converge_on_one_row_with_latest_values() -> None:
    repository = InMemoryRepository()
    broker = InMemoryBroker()
    first = _submit(repository, broker)
    second = _submit(repository, broker)
    adapter = FakeAdapter(
        [
            PackageMetadata(name="tokio", version="1.44.0", downloads=100),
            PackageMetadata(name="tokio", version="1.45.0", downloads=150),
        ]
    )

    _drain(broker, repository, {"crates.io": adapter})

    assert first["id"] != second["id"]
    jobs = asyncio.run(repository.list_jobs(PageRequest(limit=10)))
    assert [row["status"] for row in jobs] == ["Completed", "Completed"]
    packages = asyncio.run(repository.list_packages(PageRequest(limit=10)))
    assert len(packages) == 1
    assert packages[0]["version"] == "1.45.0"
    assert packages[0]["downloads"] == 150


def test_transient_failure_is_redelivered_until_dead_letter() -> None:
    repository = InMemoryRepository()
    broker = InMemoryBroker(max_deliveries=3)
    job = _submit(repository, broker)
    adapter = FakeAdapter([RegistryTransientError("crates.io: HTTP 503")])

    outcomes = _drain(broker, repository, {"crates.io": adapter})

    assert outcomes == ["retry", "retry", "retry"]
    assert len(adapter.calls) == 3
    assert [(message.job_id, reason) for message, reason in broker.dead_letters] == [
        (job["id"], "upstream_transient")
    ]
    # No failure state exists: the job stays Processing.
    assert asyncio.run(repository.get_job(job["id"]))["status"] == "Processing"


def test_transient_failure_then_success_completes_job() -> None:
    repository = InMemoryRepository()
    broker = InMemoryBroker(max_deliveries=3)
    job = _submit(repository, broker)
    adapter = FakeAdapter(
        [RegistryTransientError("timeout"), PackageMetadata(name="tokio", version="1.45.0", downloads=7)]
    )

    outcomes = _drain(broker, repository, {"crates.io": adapter})

    assert outcomes == ["retry", "completed"]
    assert asyncio.run(repository.get_job(job["id"]))["status"] == "Completed"
    assert list(broker.dead_letters) == []


def test_permanent_failure_goes_straight_to_dead_letter() -> None:
    repository = InMemoryRepository()
    broker = InMemoryBroker(max_deliveries=5)
    job = _submit(repository, broker, package_name="no-such-crate")
    adapter = FakeAdapter([RegistryPermanentError("crates.io: package not found")])

    outcomes = _drain(broker, repository, {"crates.io": adapter})

    assert outcomes == ["dead_letter"]
    assert len(adapter.calls) == 1
    assert broker.dead_letters[0][1] == "upstream_permanent"
    assert asyncio.run(repository.get_job(job["id"]))["status"] == "Processing"


def test_unknown_job_is_dead_lettered() -> None:
    repository = InMemoryRepository()
    broker = InMemoryBroker()
    asyncio.run(
        broker.publish(
            JobMessage(job_id="0190b6a0-0000-7000-8000-000000000000", registry="crates.io", package_name="tokio")
        )
    )

    outcomes = _drain(broker, repository, {"crates.io": FakeAdapter([RegistryTransientError("unused")])})

    assert outcomes == ["dead_letter"]
    assert broker.dead_letters[0][1] == "job_not_found"


def test_store_outage_during_commit_is_retried() -> None:
    repository = FlakyRepository(failures=1)
    broker = InMemoryBroker()
    job = _submit(repository, broker)
    adapter = FakeAdapter([PackageMetadata(name="tokio", version="1.45.0", downloads=1)])

    outcomes = _drain(broker, repository, {"crates.io": adapter})

    assert outcomes == ["retry", "completed"]
    assert asyncio.run(repository.get_job(job["id"]))["status"] == "Completed"


def test_worker_pool_processes_jobs_concurrently() -> None:
    repository = InMemoryRepository()
    broker = InMemoryBroker(poll_interval_seconds=0.01)
    jobs = [_submit(repository, broker, package_name=f"crate-{index}") for index in range(6)]

    class EchoAdapter:
        registry = "crates.io"

        async def fetch(self, package_name: str) -> PackageMetadata:
            await asyncio.sleep(0.01)
            return PackageMetadata(name=package_name, version="1.0.0", downloads=1)

    async def run() -> None:
        pool = WorkerPool(repository=repository, broker=broker, adapters={"crates.io": EchoAdapter()}, concurrency=3)
        await pool.start()
        for _ in range(200):
            if len(broker.acked) == len(jobs):
                break
            await asyncio.sleep(0.01)
        await pool.stop()

    asyncio.run(run())

    statuses = {job["id"]: asyncio.run(repository.get_job(job["id"]))["status"] for job in jobs}
    assert set(statuses.values()) == {"Completed"}
    assert len(asyncio.run(repository.list_packages(PageRequest(limit=100)))) == 6


def test_unexpected_error_is_nacked_and_eventually_dead_lettered() -> None:
    repository = BrokenConnectionRepository()
    broker = InMemoryBroker(max_deliveries=3)
    job = _submit(repository, broker)

    outcomes = _drain(broker, repository, {"crates.io": FakeAdapter([RegistryTransientError("unused")])})

    assert outcomes == ["retry", "retry", "retry"]
    assert [(message.job_id, reason) for message, reason in broker.dead_letters] == [(job["id"], "worker_error")]
    assert list(broker.acked) == []


def test_rejected_metadata_is_dead_lettered() -> None:
    repository = RejectingRepository()
    broker = InMemoryBroker()
    job = _submit(repository, broker)
    adapter = FakeAdapter([PackageMetadata(name="tokio", version="1.45.0", downloads=1)])

    outcomes = _drain(broker, repository, {"crates.io": adapter})

    assert outcomes == ["dead_letter"]
    assert broker.dead_letters[0][1] == "invalid_metadata"
    assert asyncio.run(repository.get_job(job["id"]))["status"] == "Processing"


def test_worker_pool_never_loses_a_message_on_unexpected_error() -> None:
    repository = BrokenConnectionRepository()
    broker = InMemoryBroker(max_deliveries=2, poll_interval_seconds=0.01)
    _submit(repository, broker)

    async def run() -> None:
        pool = WorkerPool(
            repository=repository,
            broker=broker,
            adapters={"crates.io": FakeAdapter([RegistryTransientError("unused")])},
            poll_interval_seconds=0.01,
        )
        await pool.start()
        for _ in range(100):
            if broker.dead_letters:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

    asyncio.run(run())

    assert broker.pending + len(broker.dead_letters) == 1
    assert broker.dead_letters[0][1] == "worker_error"
