from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

from integrations_api.core.ids import new_time_ordered_id, parse_id
from integrations_api.schemas.jobs import JOB_STATUS_COMPLETED, JOB_STATUS_PROCESSING
from integrations_api.services.pagination import PageRequest
from integrations_api.services.repository import RepositoryNotFoundError, RepositoryValidationError


class InMemoryRepository:
    """Process-local job and package store with the same contract as PostgresRepository."""

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.packages: dict[str, dict[str, Any]] = {}
        self._package_ids: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    async def close(self) -> None:
        return None

    async def create_job(self, *, registry: str, package_name: str, trace_id: str | None) -> dict[str, Any]:
        job = {
            "id": new_time_ordered_id(),
            "registry": registry,
            "package_name": package_name,
            "status": JOB_STATUS_PROCESSING,
            "trace_id": trace_id,
            "created_at": datetime.now(timezone.utc),
        }
        with self._lock:
            self.jobs[job["id"]] = job
        return dict(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(_canonical_id(job_id))
        if not job:
            raise RepositoryNotFoundError("job not found")
        return dict(job)

    async def list_jobs(self, page: PageRequest) -> list[dict[str, Any]]:
        with self._lock:
            rows = list(self.jobs.values())
        return [dict(row) for row in page.apply(rows, key=lambda row: parse_id(row["id"]))]

    async def get_package(self, package_id: str) -> dict[str, Any]:
        package = self.packages.get(_canonical_id(package_id))
        if not package:
            raise RepositoryNotFoundError("package not found")
        return dict(package)

    async def list_packages(self, page: PageRequest) -> list[dict[str, Any]]:
        with self._lock:
            rows = list(self.packages.values())
        return [dict(row) for row in page.apply(rows, key=lambda row: parse_id(row["id"]))]

    async def record_scrape_result(
        self,
        *,
        job_id: str,
        registry: str,
        name: str,
        version: str,
        downloads: int,
    ) -> dict[str, Any]:
        if downloads < 0:
            raise RepositoryValidationError("downloads must be non-negative")

        with self._lock:
            job = self.jobs.get(_canonical_id(job_id))
            if not job:
                raise RepositoryNotFoundError("job not found")

            package_id = self._package_ids.get((registry, name))
            if package_id is None:
                package_id = new_time_ordered_id()
                self._package_ids[(registry, name)] = package_id
                self.packages[package_id] = {"id": package_id, "registry": registry, "name": name}
            self.packages[package_id].update(version=version, downloads=downloads)

            if job["status"] == JOB_STATUS_PROCESSING:
                job["status"] = JOB_STATUS_COMPLETED
            return dict(job)


def _canonical_id(value: str) -> str:
    try:
        return str(parse_id(value))
    except ValueError:
        return ""
