from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from integrations_api.core.config import Settings

logger = logging.getLogger(__name__)


class RawPayloadCache:
    """Keeps raw upstream registry responses in an S3-compatible bucket."""

    def __init__(self, bucket: str, client: Any) -> None:
        self.bucket = bucket
        self._client = client

    @staticmethod
    def object_key(registry: str, package_name: str, job_id: str) -> str:
        return f"raw/{registry}/{package_name.lstrip('@')}/{job_id}.json"

    async def put(self, key: str, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, sort_keys=True).encode("utf-8")
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType="application/json",
        )

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                return None
            raise
        body = await asyncio.to_thread(response["Body"].read)
        return json.loads(body)

    async def store_quietly(self, key: str, payload: dict[str, Any]) -> None:
        try:
            await self.put(key, payload)
        except (BotoCoreError, ClientError):
            logger.warning("raw payload cache write failed key=%s", key, exc_info=True)


def build_payload_cache(settings: Settings) -> RawPayloadCache | None:
    if not settings.s3_bucket:
        return None
    client = boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint_url,
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        region_name=settings.s3_region,
    )
    return RawPayloadCache(settings.s3_bucket, client)
