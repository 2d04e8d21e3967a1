from __future__ import annotations

import logging
from typing import Any

from integrations_api.core.metrics import JOBS_CREATED_TOTAL
from integrations_api.core.telemetry import current_trace_id
from integrations_api.registries.adapters import SUPPORTED_REGISTRIES
from integrations_api.schemas.messages import JobMessage
from integrations_api.services.broker import MessageBroker
from integrations_api.services.repository import Repository, RepositoryValidationError

logger = logging.getLogger(__name__)


def validate_job_request(registry: str, package_name: str) -> tuple[str, str]:
    normalized_registry = (registry or "").strip().lower()
    if normalized_registry not in SUPPORTED_REGISTRIES:
        supported = ", ".join(sorted(SUPPORTED_REGISTRIES))
        raise RepositoryValidationError(f"Unsupported registry '{registry}'; expected one of: {supported}")

    normalized_name = (package_name or "").strip()
    if not normalized_name:
        raise RepositoryValidationError("package_name must be a non-empty string")
    return normalized_registry, normalized_name


async def create_job(
    *,
    repository: Repository,
    broker: MessageBroker,
    registry: str,
    package_name: str,
) -> dict[str, Any]:
    """Persist a Processing job, then publish its work message.

    The insert and the publish are separate effects: if the publish fails the
    job row stays in Processing and the broker error propagates to the caller.
    """
    normalized_registry, normalized_name = validate_job_request(registry, package_name)
    job = await repository.create_job(
        registry=normalized_registry,
        package_name=normalized_name,
        trace_id=current_trace_id(),
    )
    message = JobMessage(
        job_id=job["id"],
        registry=job["registry"],
        package_name=job["package_name"],
        trace_id=job["trace_id"],
    )
    try:
        await broker.publish(message)
    except Exception:
        logger.exception("job persisted but publish failed id=%s", job["id"])
        raise
    JOBS_CREATED_TOTAL.labels(registry=job["registry"]).inc()
    logger.info("job accepted id=%s registry=%s package=%s", job["id"], job["registry"], job["package_name"])
    return job
