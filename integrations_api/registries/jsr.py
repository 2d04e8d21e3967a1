from __future__ import annotations

import re
from typing import Any

from integrations_api.registries.base import (
    PackageMetadata,
    RegistryAdapter,
    RegistryPermanentError,
    as_non_negative_int,
    as_text,
)

JSR_NAME_RE = re.compile(r"^@?(?P<scope>[a-z0-9][a-z0-9-]*)/(?P<name>[a-z0-9][a-z0-9-]*)$")


def parse_jsr_name(package_name: str) -> tuple[str, str]:
    match = JSR_NAME_RE.match((package_name or "").strip().lower())
    if not match:
        raise RegistryPermanentError(f"jsr.io: invalid package name {package_name!r}, expected @scope/name")
    return match.group("scope"), match.group("name")


class JsrAdapter(RegistryAdapter):
    registry = "jsr.io"

    async def fetch(self, package_name: str) -> PackageMetadata:
        scope, name = parse_jsr_name(package_name)
        package_url = f"{self.base_url}/scopes/{scope}/packages/{name}"

        payload = await self._get_json(package_url) or {}
        version = as_text(payload.get("latestVersion"))
        if version is None:
            raise RegistryPermanentError(f"jsr.io: @{scope}/{name} has no published version")

        downloads_payload = await self._get_json(f"{package_url}/downloads", not_found_ok=True)
        downloads = _total_downloads(downloads_payload)

        return PackageMetadata(
            name=f"@{scope}/{name}",
            version=version,
            downloads=downloads,
            raw={"package": payload, "downloads": downloads_payload},
        )


def _total_downloads(payload: dict[str, Any] | None) -> int:
    if not payload:
        return 0
    buckets = payload.get("total")
    if not isinstance(buckets, list):
        return 0
    total = 0
    for bucket in buckets:
        if isinstance(bucket, dict):
            total += as_non_negative_int(bucket.get("count")) or 0
    return total
