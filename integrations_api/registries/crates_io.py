from __future__ import annotations

from urllib.parse import quote

from integrations_api.registries.base import (
    PackageMetadata,
    RegistryAdapter,
    RegistryPermanentError,
    as_non_negative_int,
    as_text,
)


class CratesIoAdapter(RegistryAdapter):
    registry = "crates.io"

    async def fetch(self, package_name: str) -> PackageMetadata:
        name = as_text(package_name)
        if not name or "/" in name:
            raise RegistryPermanentError(f"crates.io: invalid crate name {package_name!r}")

        payload = await self._get_json(f"{self.base_url}/api/v1/crates/{quote(name, safe='')}")
        crate = payload.get("crate") if payload else None
        if not isinstance(crate, dict):
            raise RegistryPermanentError(f"crates.io: response for {name!r} has no crate object")

        version = (
            as_text(crate.get("max_stable_version"))
            or as_text(crate.get("max_version"))
            or as_text(crate.get("newest_version"))
        )
        downloads = as_non_negative_int(crate.get("downloads"))
        if version is None or downloads is None:
            raise RegistryPermanentError(f"crates.io: response for {name!r} is missing version or downloads")

        return PackageMetadata(
            name=as_text(crate.get("name")) or name,
            version=version,
            downloads=downloads,
            raw=payload or {},
        )
