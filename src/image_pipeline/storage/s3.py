# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
S3Store for the Image Pipeline

S3-compatible blob store (AWS S3, DigitalOcean Spaces, MinIO). boto3 is
synchronous, so every call runs in a worker thread via ``asyncio.to_thread``.
Streamed writes use the multipart upload API and abort the upload on any
failure so no partial object is left behind.
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import StorageOperationError
from .base import BaseStore, HealthCheckResult, MemoryGuard, iter_parts

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})

DEFAULT_CACHE_CONTROL = "public, max-age=31536000, immutable"
"""Stored images are content-addressed, so they never change."""


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3Store(BaseStore):
    """
    S3-compatible blob store.

    Objects are written with ``public-read`` ACL when ``public_read`` is set,
    so the CDN can serve them directly.
    """

    store_type = "s3"

    def __init__(
        self,
        bucket: str | None = None,
        endpoint_url: str | None = None,
        region: str = "us-east-1",
        access_key: str | None = None,
        secret_key: str | None = None,
        client: Any | None = None,
        public_read: bool = True,
        memory_guard: MemoryGuard | None = None,
    ) -> None:
        """
        Initialize the S3 store.

        Args:
            bucket: Bucket name. Falls back to the S3_BUCKET environment variable.
            endpoint_url: Endpoint for non-AWS providers. Falls back to S3_SERVER_URL.
            region: Region name
            access_key: Access key id. Falls back to S3_ACCESS_KEY_ID.
            secret_key: Secret key. Falls back to S3_SECRET_ACCESS_KEY.
            client: Pre-built boto3 S3 client (tests inject a stub)
            public_read: Write objects with a public-read ACL
            memory_guard: Optional admission check run before buffered writes

        Raises:
            ValueError: If no bucket is configured
        """
        bucket = bucket or os.environ.get("S3_BUCKET")
        if not bucket:
            raise ValueError("S3Store requires a bucket (argument or S3_BUCKET)")
        super().__init__(bucket, memory_guard)
        self.bucket = bucket
        self.endpoint_url = endpoint_url or os.environ.get("S3_SERVER_URL")
        self.region = region
        self.public_read = public_read

        if client is None:
            client_kwargs: dict[str, Any] = {
                "service_name": "s3",
                "region_name": region,
                "config": Config(signature_version="s3v4", retries={"max_attempts": 3}),
            }
            if self.endpoint_url:
                client_kwargs["endpoint_url"] = self.endpoint_url
            access_key = access_key or os.environ.get("S3_ACCESS_KEY_ID")
            secret_key = secret_key or os.environ.get("S3_SECRET_ACCESS_KEY")
            if access_key and secret_key:
                client_kwargs["aws_access_key_id"] = access_key
                client_kwargs["aws_secret_access_key"] = secret_key
            client = boto3.client(**client_kwargs)
        self.client = client

        logger.info(f"S3Store initialized (bucket={bucket}, endpoint={self.endpoint_url})")

    def _put_args(self, content_type: str) -> dict[str, Any]:
        args: dict[str, Any] = {"ContentType": content_type, "CacheControl": DEFAULT_CACHE_CONTROL}
        if self.public_read:
            args["ACL"] = "public-read"
        return args

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            logger.error(f"S3 error checking {key}: {e}")
            return False
        except BotoCoreError as e:
            logger.error(f"S3 error checking {key}: {e}")
            return False

    async def read(self, key: str) -> bytes | None:
        try:
            response = await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket, Key=key
            )
            body = response["Body"]
            try:
                return bytes(await asyncio.to_thread(body.read))
            finally:
                body.close()
        except ClientError as e:
            if _error_code(e) not in _NOT_FOUND_CODES:
                logger.error(f"S3 error reading {key}: {e}")
            return None
        except BotoCoreError as e:
            logger.error(f"S3 error reading {key}: {e}")
            return None

    async def write(self, key: str, data: bytes, content_type: str) -> None:
        self._check_headroom(key, len(data))
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                **self._put_args(content_type),
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 error writing {key}: {e}")
            raise StorageOperationError(f"S3 write to {key} failed: {e}", key=key) from e
        logger.debug(f"S3 wrote {len(data)} bytes to {key}")

    async def delete(self, key: str) -> bool:
        if not await self.exists(key):
            return False
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 error deleting {key}: {e}")
            raise StorageOperationError(f"S3 delete of {key} failed: {e}", key=key) from e
        return True

    async def list_keys(self, prefix: str = "") -> list[str]:
        def _list() -> list[str]:
            paginator = self.client.get_paginator("list_objects_v2")
            keys: list[str] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
            return keys

        try:
            return sorted(await asyncio.to_thread(_list))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 error listing {prefix!r}: {e}")
            return []

    async def write_stream(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: str,
        part_size: int = 5 * 1024 * 1024,
    ) -> int:
        try:
            created = await asyncio.to_thread(
                self.client.create_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                **self._put_args(content_type),
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 error starting multipart upload for {key}: {e}")
            raise StorageOperationError(f"S3 multipart start for {key} failed: {e}", key=key) from e

        upload_id = created["UploadId"]
        parts: list[dict[str, Any]] = []
        total = 0
        try:
            async for part in iter_parts(chunks, part_size):
                number = len(parts) + 1
                response = await asyncio.to_thread(
                    self.client.upload_part,
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=number,
                    Body=part,
                )
                parts.append({"ETag": response["ETag"], "PartNumber": number})
                total += len(part)

            await asyncio.to_thread(
                self.client.complete_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 multipart upload for {key} failed: {e}")
            await self._abort(key, upload_id)
            raise StorageOperationError(f"S3 multipart upload for {key} failed: {e}", key=key) from e
        except BaseException:
            await self._abort(key, upload_id)
            raise

        logger.debug(f"S3 streamed {total} bytes to {key} in {len(parts)} parts")
        return total

    async def _abort(self, key: str, upload_id: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.abort_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Could not abort multipart upload {upload_id} for {key}: {e}")

    async def health_check(self) -> HealthCheckResult:
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            return HealthCheckResult(
                healthy=False,
                store_type=self.store_type,
                namespace=self.namespace,
                error=str(e),
            )
        return HealthCheckResult(
            healthy=True,
            store_type=self.store_type,
            namespace=self.namespace,
            metadata={"endpoint": self.endpoint_url, "region": self.region},
        )


__all__ = ["S3Store"]
