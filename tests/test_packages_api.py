from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from integrations_api.core.ids import new_time_ordered_id
from integrations_api.main import app
from integrations_api.services.repository import get_repository
from integrations_api.services.store import InMemoryRepository


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def api_client(repository: InMemoryRepository) -> Iterator[TestClient]:
    app.dependency_overrides[get_repository] = lambda: repository
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def _scrape(repository: InMemoryRepository, registry: str, name: str, version: str, downloads: int) -> None:
    async def run() -> None:
        job = await repository.create_job(registry=registry, package_name=name, trace_id=None)
        await repository.record_scrape_result(
            job_id=job["id"],
            registry=registry,
            name=name,
            version=version,
            downloads=downloads,
        )

    asyncio.run(run())


def test_list_packages_returns_scraped_rows(api_client: TestClient, repository: InMemoryRepository) -> None:
    _scrape(repository, "crates.io", "tokio", "1.45.0", 312)
    _scrape(repository, "jsr.io", "@std/path", "1.0.9", 1234)

    response = api_client.get("/packages")

    assert response.status_code == 200
    body = response.json()
    assert [(row["registry"], row["name"], row["version"], row["downloads"]) for row in body["data"]] == [
        ("crates.io", "tokio", "1.45.0", 312),
        ("jsr.io", "@std/path", "1.0.9", 1234),
    ]
    assert body["next_cursor"] is None


def test_same_package_in_different_registries_is_distinct(
    api_client: TestClient, repository: InMemoryRepository
) -> None:
    _scrape(repository, "crates.io", "path", "0.1.0", 1)
    _scrape(repository, "jsr.io", "path", "0.2.0", 2)

    rows = api_client.get("/packages").json()["data"]

    assert {(row["registry"], row["name"]) for row in rows} == {("crates.io", "path"), ("jsr.io", "path")}


def test_rescrape_updates_existing_package_in_place(api_client: TestClient, repository: InMemoryRepository) -> None:
    _scrape(repository, "crates.io", "serde", "1.0.0", 10)
    first_id = api_client.get("/packages").json()["data"][0]["id"]
    _scrape(repository, "crates.io", "serde", "1.0.1", 25)

    rows = api_client.get("/packages").json()["data"]

    assert rows == [
        {"id": first_id, "registry": "crates.io", "name": "serde", "version": "1.0.1", "downloads": 25}
    ]


def test_list_packages_default_limit_is_one_hundred(api_client: TestClient, repository: InMemoryRepository) -> None:
    for index in range(101):
        _scrape(repository, "crates.io", f"crate-{index}", "1.0.0", index)

    body = api_client.get("/packages").json()

    assert len(body["data"]) == 100
    assert body["next_cursor"] == body["data"][-1]["id"]
    rest = api_client.get("/packages", params={"after": body["next_cursor"]}).json()
    assert [row["name"] for row in rest["data"]] == ["crate-100"]
    assert rest["next_cursor"] is None


def test_list_packages_descending(api_client: TestClient, repository: InMemoryRepository) -> None:
    for name in ["a", "b", "c"]:
        _scrape(repository, "crates.io", name, "1.0.0", 1)

    rows = api_client.get("/packages", params={"order": "desc", "limit": 2}).json()["data"]

    assert [row["name"] for row in rows] == ["c", "b"]


def test_get_package_by_id(api_client: TestClient, repository: InMemoryRepository) -> None:
    _scrape(repository, "crates.io", "tokio", "1.45.0", 312)
    package_id = api_client.get("/packages").json()["data"][0]["id"]

    response = api_client.get(f"/packages/{package_id}")

    assert response.status_code == 200
    assert response.json()["data"]["name"] == "tokio"


@pytest.mark.parametrize("package_id", [new_time_ordered_id(), "nope"])
def test_get_unknown_package_returns_404(api_client: TestClient, package_id: str) -> None:
    response = api_client.get(f"/packages/{package_id}")
    assert response.status_code == 404
    assert response.json() == {"error": {"message": "Package not found"}}


def test_list_packages_rejects_bad_cursor(api_client: TestClient) -> None:
    response = api_client.get("/packages", params={"after": "zzz"})
    assert response.status_code == 400
