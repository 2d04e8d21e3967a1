from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
from asyncpg import exceptions as pg_exc
from fastapi.testclient import TestClient

from integrations_api.core.ids import new_time_ordered_id
from integrations_api.main import app
from integrations_api.services.broker import InMemoryBroker, get_broker
from integrations_api.services.pagination import PageRequest
from integrations_api.services.repository import (
    PostgresRepository,
    RepositoryUnavailableError,
    get_repository,
)


class DroppedPool:
    """Pool whose connection went away mid-query."""

    def __init__(self, error: BaseException) -> None:
        self.error = error

    async def fetchrow(self, query: str, *args: Any) -> Any:
        raise self.error

    async def fetch(self, query: str, *args: Any) -> Any:
        raise self.error

    async def close(self) -> None:
        return None


def _repository(error: BaseException) -> PostgresRepository:
    repository = PostgresRepository("postgresql://unused", min_pool_size=1, max_pool_size=1)
    repository._pool = DroppedPool(error)  # type: ignore[assignment]
    return repository


CALLS: dict[str, Callable[[PostgresRepository], Awaitable[Any]]] = {
    "create_job": lambda repo: repo.create_job(registry="crates.io", package_name="tokio", trace_id=None),
    "get_job": lambda repo: repo.get_job(new_time_ordered_id()),
    "list_jobs": lambda repo: repo.list_jobs(PageRequest(limit=10)),
    "get_package": lambda repo: repo.get_package(new_time_ordered_id()),
    "list_packages": lambda repo: repo.list_packages(PageRequest(limit=10)),
}


@pytest.mark.parametrize("operation", sorted(CALLS))
@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("connection reset by peer"),
        TimeoutError(),
        pg_exc.ConnectionDoesNotExistError("connection was closed in the middle of operation"),
        pg_exc.InterfaceError("connection is closed"),
    ],
    ids=["reset", "timeout", "closed-mid-query", "interface"],
)
def test_dropped_connection_is_reported_as_unavailable(operation: str, error: BaseException) -> None:
    repository = _repository(error)

    with pytest.raises(RepositoryUnavailableError, match="database unavailable"):
        asyncio.run(CALLS[operation](repository))


def test_missing_database_url_is_unavailable() -> None:
    repository = PostgresRepository(None, min_pool_size=1, max_pool_size=1)

    with pytest.raises(RepositoryUnavailableError, match="IA_DATABASE_URL"):
        asyncio.run(repository.list_jobs(PageRequest(limit=10)))


@pytest.mark.parametrize("path", ["/jobs", f"/jobs/{new_time_ordered_id()}", "/packages"])
def test_dropped_connection_returns_503(path: str) -> None:
    app.dependency_overrides[get_repository] = lambda: _repository(ConnectionResetError("reset"))
    app.dependency_overrides[get_broker] = lambda: InMemoryBroker()
    try:
        with TestClient(app) as client:
            response = client.get(path)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json() == {"error": {"message": "database unavailable"}}
