from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}


class RegistryError(Exception):
    """Base error for upstream registry lookups."""


class RegistryTransientError(RegistryError):
    """Network failure, timeout or 5xx; worth retrying later."""


class RegistryPermanentError(RegistryError):
    """Package absent or request rejected; retrying will not help."""


@dataclass(slots=True)
class PackageMetadata:
    name: str
    version: str
    downloads: int
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


class RegistryAdapter(ABC):
    """Fetches one package from one upstream registry and normalizes it."""

    registry: ClassVar[str]

    def __init__(
        self,
        *,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        user_agent: str = "integrations-api/0.1",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = max(0.0, backoff_base_seconds)
        self.backoff_max_seconds = max(self.backoff_base_seconds, backoff_max_seconds)
        self.user_agent = user_agent

    @abstractmethod
    async def fetch(self, package_name: str) -> PackageMetadata:
        raise NotImplementedError

    async def _get_json(self, url: str, *, not_found_ok: bool = False) -> dict[str, Any] | None:
        if self.client is not None:
            return await self._get_json_with_retry(self.client, url, not_found_ok=not_found_ok)
        async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as temp_client:
            return await self._get_json_with_retry(temp_client, url, not_found_ok=not_found_ok)

    async def _get_json_with_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        not_found_ok: bool,
    ) -> dict[str, Any] | None:
        headers = {"Accept": "application/json", "User-Agent": self.user_agent}
        backoff = self.backoff_base_seconds
        last_error = "no attempt made"

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.get(url, headers=headers, timeout=self.timeout_seconds)
            except httpx.RequestError as exc:
                # Timeouts, transport failures, bad encodings and redirect loops.
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code == 404:
                    if not_found_ok:
                        return None
                    raise RegistryPermanentError(f"{self.registry}: package not found at {url}")
                if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
                    last_error = f"HTTP {response.status_code}"
                elif response.status_code >= 400:
                    raise RegistryPermanentError(f"{self.registry}: HTTP {response.status_code} from {url}")
                elif not response.is_success:
                    raise RegistryPermanentError(f"{self.registry}: unexpected HTTP {response.status_code} from {url}")
                else:
                    try:
                        payload = response.json()
                    except ValueError as exc:
                        raise RegistryPermanentError(f"{self.registry}: invalid JSON from {url}") from exc
                    if not isinstance(payload, dict):
                        raise RegistryPermanentError(f"{self.registry}: unexpected payload from {url}")
                    return payload

            if attempt == self.max_attempts:
                break
            sleep_for = min(backoff * (1.0 + random.uniform(0.0, 0.5)), self.backoff_max_seconds)
            logger.warning(
                "registry request failed registry=%s url=%s error=%s; retry %s/%s in %.2fs",
                self.registry,
                url,
                last_error,
                attempt,
                self.max_attempts - 1,
                sleep_for,
            )
            await asyncio.sleep(sleep_for)
            backoff = min(backoff * 2.0, self.backoff_max_seconds)

        raise RegistryTransientError(f"{self.registry}: {last_error} after {self.max_attempts} attempts ({url})")


def as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def as_non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None
