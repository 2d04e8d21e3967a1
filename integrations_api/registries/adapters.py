from __future__ import annotations

import httpx

from integrations_api.core.config import Settings
from integrations_api.registries.base import RegistryAdapter
from integrations_api.registries.crates_io import CratesIoAdapter
from integrations_api.registries.jsr import JsrAdapter

# Adding a registry means adding an adapter class and an entry here.
ADAPTER_TYPES: dict[str, type[RegistryAdapter]] = {
    CratesIoAdapter.registry: CratesIoAdapter,
    JsrAdapter.registry: JsrAdapter,
}

SUPPORTED_REGISTRIES = frozenset(ADAPTER_TYPES)


def build_adapters(settings: Settings, client: httpx.AsyncClient | None = None) -> dict[str, RegistryAdapter]:
    base_urls = {
        CratesIoAdapter.registry: settings.crates_io_base_url,
        JsrAdapter.registry: settings.jsr_api_base_url,
    }
    return {
        registry: adapter_type(
            base_url=base_urls[registry],
            client=client,
            timeout_seconds=settings.registry_timeout_seconds,
            max_attempts=settings.registry_max_attempts,
            backoff_base_seconds=settings.registry_backoff_base_seconds,
            backoff_max_seconds=settings.registry_backoff_max_seconds,
            user_agent=settings.registry_user_agent,
        )
        for registry, adapter_type in ADAPTER_TYPES.items()
    }
