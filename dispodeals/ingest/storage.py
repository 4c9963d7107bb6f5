"""Blob storage for fetched source documents."""

from __future__ import annotations

import logging
import pathlib
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from dispodeals.config import Settings
from dispodeals.db.session import run_sync
from dispodeals.errors import StorageError

logger = logging.getLogger(__name__)


class BlobStorage(Protocol):
    async def put(self, path: str, data: bytes, content_type: str) -> None: ...

    async def get(self, path: str) -> bytes: ...

    async def delete(self, path: str) -> None: ...


class LocalStorage:
    def __init__(self, root: pathlib.Path) -> None:
        self.root = pathlib.Path(root)

    def _resolve(self, path: str) -> pathlib.Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise StorageError(f"Path escapes storage root: {path}")
        return target

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)
        try:
            await run_sync(_write_bytes, target, data)
        except OSError as exc:
            raise StorageError(f"Failed to store {path}: {exc}") from exc

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await run_sync(target.read_bytes)
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await run_sync(target.unlink, missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}: {exc}") from exc


def _write_bytes(target: pathlib.Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


class S3Storage:
    def __init__(self, bucket: str, *, client=None, endpoint: str | None = None, region: str | None = None) -> None:
        self.bucket = bucket
        if client is None:
            session = boto3.session.Session()
            client = session.client("s3", endpoint_url=endpoint, region_name=region)
        self._client = client

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        try:
            await run_sync(
                self._client.put_object,
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload {path}: {exc}") from exc

    async def get(self, path: str) -> bytes:
        try:
            response = await run_sync(self._client.get_object, Bucket=self.bucket, Key=path)
            return await run_sync(response["Body"].read)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to download {path}: {exc}") from exc

    async def delete(self, path: str) -> None:
        try:
            await run_sync(self._client.delete_object, Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete {path}: {exc}") from exc


def build_storage(settings: Settings) -> BlobStorage:
    if settings.s3_bucket:
        logger.info("Storing flyers in s3://%s", settings.s3_bucket)
        return S3Storage(settings.s3_bucket, endpoint=settings.s3_endpoint, region=settings.aws_region)
    logger.info("Storing flyers under %s", settings.storage_dir)
    return LocalStorage(settings.storage_dir)
