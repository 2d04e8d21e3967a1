from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from integrations_api.core.config import get_settings
from integrations_api.core.ids import new_time_ordered_id, parse_id
from integrations_api.schemas.jobs import JOB_STATUS_COMPLETED, JOB_STATUS_PROCESSING
from integrations_api.services.pagination import PageRequest

logger = logging.getLogger(__name__)

CONNECTION_ERRORS = (
    OSError,
    pg_exc.ConnectionDoesNotExistError,
    pg_exc.InterfaceError,
    pg_exc.CannotConnectNowError,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class Repository(Protocol):
    async def close(self) -> None: ...

    async def create_job(self, *, registry: str, package_name: str, trace_id: str | None) -> dict[str, Any]: ...

    async def get_job(self, job_id: str) -> dict[str, Any]: ...

    async def list_jobs(self, page: PageRequest) -> list[dict[str, Any]]: ...

    async def get_package(self, package_id: str) -> dict[str, Any]: ...

    async def list_packages(self, page: PageRequest) -> list[dict[str, Any]]: ...

    async def record_scrape_result(
        self,
        *,
        job_id: str,
        registry: str,
        name: str,
        version: str,
        downloads: int,
    ) -> dict[str, Any]: ...


JOB_COLUMNS_SQL = """
  id::text as id,
  registry,
  package_name,
  status,
  trace_id,
  created_at
"""

PACKAGE_COLUMNS_SQL = """
  id::text as id,
  registry,
  name,
  version,
  downloads
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_job(self, *, registry: str, package_name: str, trace_id: str | None) -> dict[str, Any]:
        row = await self._fetchrow(
            f"""
            insert into jobs (id, registry, package_name, status, trace_id, created_at)
            values ($1::uuid, $2, $3, $4, $5, $6)
            returning {JOB_COLUMNS_SQL}
            """,
            new_time_ordered_id(),
            registry,
            package_name,
            JOB_STATUS_PROCESSING,
            trace_id,
            datetime.now(timezone.utc),
        )
        return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        try:
            parsed_id = parse_id(job_id)
        except ValueError as exc:
            raise RepositoryNotFoundError("job not found") from exc

        row = await self._fetchrow(f"select {JOB_COLUMNS_SQL} from jobs where id = $1::uuid", parsed_id)
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def list_jobs(self, page: PageRequest) -> list[dict[str, Any]]:
        clause, params = page.sql()
        rows = await self._fetch(f"select {JOB_COLUMNS_SQL} from jobs {clause}", *params)
        return [self._job_row_to_dict(row) for row in rows]

    async def get_package(self, package_id: str) -> dict[str, Any]:
        try:
            parsed_id = parse_id(package_id)
        except ValueError as exc:
            raise RepositoryNotFoundError("package not found") from exc

        row = await self._fetchrow(f"select {PACKAGE_COLUMNS_SQL} from packages where id = $1::uuid", parsed_id)
        if not row:
            raise RepositoryNotFoundError("package not found")
        return self._package_row_to_dict(row)

    async def list_packages(self, page: PageRequest) -> list[dict[str, Any]]:
        clause, params = page.sql()
        rows = await self._fetch(f"select {PACKAGE_COLUMNS_SQL} from packages {clause}", *params)
        return [self._package_row_to_dict(row) for row in rows]

    async def record_scrape_result(
        self,
        *,
        job_id: str,
        registry: str,
        name: str,
        version: str,
        downloads: int,
    ) -> dict[str, Any]:
        """Upsert the package and complete the job in a single transaction.

        The upsert relies on the unique (registry, name) constraint, so
        concurrent workers scraping the same package serialize in PostgreSQL.
        Completing an already completed job is a no-op.
        """
        if downloads < 0:
            raise RepositoryValidationError("downloads must be non-negative")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        insert into packages (id, registry, name, version, downloads)
                        values ($1::uuid, $2, $3, $4, $5)
                        on conflict (registry, name) do update
                        set
                          version = excluded.version,
                          downloads = excluded.downloads
                        """,
                        new_time_ordered_id(),
                        registry,
                        name,
                        version,
                        downloads,
                    )
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set status = $2
                        where id = $1::uuid and status = $3
                        returning {JOB_COLUMNS_SQL}
                        """,
                        job_id,
                        JOB_STATUS_COMPLETED,
                        JOB_STATUS_PROCESSING,
                    )
                    if not row:
                        row = await conn.fetchrow(f"select {JOB_COLUMNS_SQL} from jobs where id = $1::uuid", job_id)
                        if not row:
                            raise RepositoryNotFoundError("job not found")
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchrow(query, *args)
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        try:
            return await pool.fetch(query, *args)
        except CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("IA_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "registry": row["registry"],
            "package_name": row["package_name"],
            "status": row["status"],
            "trace_id": row["trace_id"],
            "created_at": row["created_at"],
        }

    @staticmethod
    def _package_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "registry": row["registry"],
            "name": row["name"],
            "version": row["version"],
            "downloads": int(row["downloads"]),
        }


@lru_cache
def get_repository() -> Repository:
    settings = get_settings()
    if not settings.database_url:
        # Local bootstrap mode: state lives only as long as the process.
        from integrations_api.services.store import InMemoryRepository

        logger.warning("IA_DATABASE_URL not set; using in-memory job and package store")
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
