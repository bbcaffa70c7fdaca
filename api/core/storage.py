"""
Object storage (MinIO / any S3-compatible backend) via boto3.

boto3 is blocking, so every call is pushed to a worker thread with
`asyncio.to_thread`. Each await is a cancellation point for the request.

Like the DB pool, the store is created once per process by the FastAPI
lifespan (see `api/main.py`) and fetched with `blob_store()`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from . import errors, settings

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}

# S3 caps delete_objects at 1000 keys, list pages use the same size.
_PAGE_SIZE = 1000

_store: "BlobStore | None" = None


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    content_type: str
    last_modified: datetime | None


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_missing(exc: Exception) -> bool:
    return isinstance(exc, ClientError) and _error_code(exc) in _MISSING_CODES


class BlobStore:
    """
    Thin async wrapper over an S3 client bound to one bucket.
    """

    def __init__(self, client: Any, bucket: str) -> None:
        if not bucket:
            raise ValueError("Bucket name is empty.")
        self._client = client
        self.bucket = bucket

    async def _call(self, method: str, **kwargs: Any) -> dict:
        fn = getattr(self._client, method)
        return await asyncio.to_thread(fn, **kwargs)

    async def ensure_bucket(self) -> None:
        try:
            await self._call("head_bucket", Bucket=self.bucket)
            return
        except ClientError as exc:
            if not _is_missing(exc):
                raise errors.StorageReadFailed(f"Failed to check bucket {self.bucket}: {exc}") from exc
        except BotoCoreError as exc:
            raise errors.StorageReadFailed(f"Failed to check bucket {self.bucket}: {exc}") from exc

        kwargs: dict[str, Any] = {"Bucket": self.bucket}
        region = settings.env_str("MINIO_REGION", "us-east-1")
        if region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            await self._call("create_bucket", **kwargs)
        except ClientError as exc:
            # Lost a creation race with another worker.
            if _error_code(exc) in {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}:
                return
            raise errors.StorageWriteFailed(f"Failed to create bucket {self.bucket}: {exc}") from exc
        except BotoCoreError as exc:
            raise errors.StorageWriteFailed(f"Failed to create bucket {self.bucket}: {exc}") from exc
        logger.info("bucket_created bucket=%s", self.bucket)

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            await self._call(
                "put_object",
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentLength=len(data),
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            raise errors.StorageWriteFailed(f"Failed to put object {key}: {exc}") from exc

    async def get(self, key: str) -> bytes:
        try:
            response = await self._call("get_object", Bucket=self.bucket, Key=key)
            body = response["Body"]
            try:
                return await asyncio.to_thread(body.read)
            finally:
                body.close()
        except (ClientError, BotoCoreError) as exc:
            if _is_missing(exc):
                raise errors.NotFound(f"Object {key} not found.") from exc
            raise errors.StorageReadFailed(f"Failed to get object {key}: {exc}") from exc

    async def stat(self, key: str) -> ObjectInfo:
        try:
            response = await self._call("head_object", Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            if _is_missing(exc):
                raise errors.NotFound(f"Object {key} not found.") from exc
            raise errors.StorageReadFailed(f"Failed to stat object {key}: {exc}") from exc
        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength") or 0),
            content_type=str(response.get("ContentType") or ""),
            last_modified=response.get("LastModified"),
        )

    async def exists(self, key: str) -> bool:
        try:
            await self.stat(key)
        except errors.NotFound:
            return False
        return True

    async def delete(self, key: str) -> None:
        try:
            await self._call("delete_object", Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise errors.StorageWriteFailed(f"Failed to delete object {key}: {exc}") from exc

    async def _list_page(self, prefix: str, token: str | None) -> tuple[list[dict], str | None]:
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": _PAGE_SIZE}
        if token:
            kwargs["ContinuationToken"] = token
        try:
            response = await self._call("list_objects_v2", **kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise errors.StorageReadFailed(f"Failed to list objects under {prefix}: {exc}") from exc

        contents = list(response.get("Contents") or [])
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return contents, next_token

    async def list(self, prefix: str, *, with_metadata: bool = False) -> list[ObjectInfo]:
        """
        Recursive listing under `prefix`, in the store's (lexicographic) order.

        S3 listings carry no content type; `with_metadata=True` adds one
        HEAD request per object to fill it in. Keys deleted between the
        listing and their HEAD are left out.
        """
        objects: list[ObjectInfo] = []
        token: str | None = None
        while True:
            contents, token = await self._list_page(prefix, token)
            for item in contents:
                key = str(item["Key"])
                if with_metadata:
                    try:
                        objects.append(await self.stat(key))
                    except errors.NotFound:
                        logger.debug("blob_list_skip_vanished key=%s", key)
                    continue
                objects.append(
                    ObjectInfo(
                        key=key,
                        size=int(item.get("Size") or 0),
                        content_type="",
                        last_modified=item.get("LastModified"),
                    )
                )
            if token is None:
                return objects

    async def delete_prefix(self, prefix: str) -> int:
        """
        Delete every object under `prefix`, one listing page at a time.

        Not atomic: a failure or cancellation between pages leaves the objects
        of later pages in place, and the caller must treat that as a failed
        delete to retry.
        """
        if not prefix:
            raise ValueError("Refusing to delete an empty prefix.")

        deleted = 0
        while True:
            # Deleted keys drop out of the listing, so always read the first page.
            contents, token = await self._list_page(prefix, None)
            if not contents:
                return deleted

            keys = [{"Key": str(item["Key"])} for item in contents]
            try:
                response = await self._call(
                    "delete_objects",
                    Bucket=self.bucket,
                    Delete={"Objects": keys, "Quiet": True},
                )
            except (ClientError, BotoCoreError) as exc:
                raise errors.StorageWriteFailed(
                    f"Failed to delete objects under {prefix} after {deleted} deletions: {exc}"
                ) from exc

            failures = response.get("Errors") or []
            if failures:
                first = failures[0]
                raise errors.StorageWriteFailed(
                    f"Failed to delete object {first.get('Key')} under {prefix}: "
                    f"{first.get('Code')} {first.get('Message')} "
                    f"({len(failures)} failures, {deleted} deleted before this page)"
                )
            deleted += len(keys)
            if token is None and len(contents) < _PAGE_SIZE:
                return deleted


def minio_endpoint_url() -> str:
    endpoint = settings.env_str("MINIO_ENDPOINT", "localhost:9000")
    if endpoint.startswith(("http://", "https://")):
        return endpoint.rstrip("/")
    scheme = "https" if settings.env_bool("MINIO_USE_SSL", False) else "http"
    return f"{scheme}://{endpoint}".rstrip("/")


def bucket_name() -> str:
    return settings.env_str("MINIO_BUCKET_NAME", "feedback-bucket")


def build_client() -> Any:
    timeout_s = settings.env_float("BLOB_TIMEOUT_S", 30.0)
    return boto3.client(
        "s3",
        endpoint_url=minio_endpoint_url(),
        aws_access_key_id=settings.env_str("MINIO_ACCESS_KEY", "minioadmin"),
        aws_secret_access_key=settings.env_str("MINIO_SECRET_KEY", "minioadmin"),
        region_name=settings.env_str("MINIO_REGION", "us-east-1"),
        config=Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
            connect_timeout=timeout_s,
            read_timeout=timeout_s,
            # Retry policy belongs to callers, never to the store.
            retries={"total_max_attempts": 1, "mode": "standard"},
        ),
    )


async def init_store() -> None:
    global _store
    if _store is not None:
        return None
    client = await asyncio.to_thread(build_client)
    store = BlobStore(client, bucket_name())
    await store.ensure_bucket()
    _store = store
    logger.info("blob_store_ready endpoint=%s bucket=%s", minio_endpoint_url(), store.bucket)


def close_store() -> None:
    global _store
    _store = None


def set_blob_store(store: BlobStore | None) -> None:
    global _store
    _store = store


def blob_store() -> BlobStore:
    if _store is None:
        raise RuntimeError("Blob store is not initialized. Call init_store() on startup.")
    return _store
