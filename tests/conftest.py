"""Shared fixtures: in-memory object storage and metadata store."""

from __future__ import annotations

import io
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError

from core import storage
from feedback import repository

TEST_BUCKET = "feedback-test"


def client_error(code: str, operation: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakeS3Client:
    """Just enough of the boto3 S3 client surface used by BlobStore."""

    def __init__(self, *, page_size: int = 1000):
        self.page_size = page_size
        self.buckets: dict[str, dict[str, dict]] = {}
        self.delete_errors: set[str] = set()
        self._failures: list[tuple[str, str, Exception]] = []
        self._lock = threading.Lock()

    def fail(self, method: str, exc: Exception, *, key_contains: str = "") -> None:
        self._failures.append((method, key_contains, exc))

    def clear_failures(self) -> None:
        self._failures.clear()

    def _check(self, method: str, key: str = "") -> None:
        for failing_method, key_contains, exc in self._failures:
            if failing_method == method and key_contains in key:
                raise exc

    def _bucket(self, name: str, operation: str) -> dict[str, dict]:
        if name not in self.buckets:
            raise client_error("NoSuchBucket", operation)
        return self.buckets[name]

    def keys(self, bucket: str = TEST_BUCKET) -> list[str]:
        return sorted(self.buckets.get(bucket, {}))

    def head_bucket(self, Bucket):
        self._check("head_bucket")
        if Bucket not in self.buckets:
            raise client_error("404", "HeadBucket", "Not Found")
        return {}

    def create_bucket(self, Bucket, **_kwargs):
        self._check("create_bucket")
        if Bucket in self.buckets:
            raise client_error("BucketAlreadyOwnedByYou", "CreateBucket")
        self.buckets[Bucket] = {}
        return {}

    def put_object(self, Bucket, Key, Body, ContentLength=None, ContentType="binary/octet-stream"):
        self._check("put_object", Key)
        with self._lock:
            self._bucket(Bucket, "PutObject")[Key] = {
                "data": bytes(Body),
                "content_type": ContentType,
                "last_modified": datetime.now(timezone.utc),
            }
        return {"ETag": '"fake"'}

    def _object(self, Bucket, Key, operation: str, missing_code: str) -> dict:
        obj = self._bucket(Bucket, operation).get(Key)
        if obj is None:
            raise client_error(missing_code, operation)
        return obj

    def get_object(self, Bucket, Key):
        self._check("get_object", Key)
        obj = self._object(Bucket, Key, "GetObject", "NoSuchKey")
        return {
            "Body": io.BytesIO(obj["data"]),
            "ContentLength": len(obj["data"]),
            "ContentType": obj["content_type"],
        }

    def head_object(self, Bucket, Key):
        self._check("head_object", Key)
        obj = self._object(Bucket, Key, "HeadObject", "404")
        return {
            "ContentLength": len(obj["data"]),
            "ContentType": obj["content_type"],
            "LastModified": obj["last_modified"],
        }

    def delete_object(self, Bucket, Key):
        self._check("delete_object", Key)
        with self._lock:
            self._bucket(Bucket, "DeleteObject").pop(Key, None)
        return {}

    def list_objects_v2(self, Bucket, Prefix="", MaxKeys=1000, ContinuationToken=None):
        self._check("list_objects_v2", Prefix)
        keys = [k for k in sorted(self._bucket(Bucket, "ListObjectsV2")) if k.startswith(Prefix)]
        start = int(ContinuationToken or 0)
        page = keys[start : start + min(MaxKeys, self.page_size)]
        end = start + len(page)
        bucket = self.buckets[Bucket]
        response = {
            "Contents": [
                {"Key": k, "Size": len(bucket[k]["data"]), "LastModified": bucket[k]["last_modified"]}
                for k in page
            ],
            "IsTruncated": end < len(keys),
            "KeyCount": len(page),
        }
        if end < len(keys):
            response["NextContinuationToken"] = str(end)
        return response

    def delete_objects(self, Bucket, Delete):
        self._check("delete_objects")
        bucket = self._bucket(Bucket, "DeleteObjects")
        errors = []
        with self._lock:
            for item in Delete["Objects"]:
                key = item["Key"]
                if key in self.delete_errors:
                    errors.append({"Key": key, "Code": "AccessDenied", "Message": "Access Denied"})
                    continue
                bucket.pop(key, None)
        return {"Errors": errors} if errors else {}


class FakeMetadataStore:
    """In-memory stand-in for feedback.repository (same call signatures)."""

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.delete_error: Exception | None = None
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    async def create_feedback(self, *, owner_id, lab_id, title, content_hash):
        now = self._tick()
        row = {
            "id": str(uuid.uuid4()),
            "owner_id": owner_id,
            "lab_id": lab_id,
            "title": title,
            "content_hash": content_hash,
            "created_at": now,
            "updated_at": now,
        }
        self.rows[row["id"]] = row
        return dict(row)

    async def get_feedback(self, feedback_id):
        row = self.rows.get(feedback_id)
        return dict(row) if row is not None else None

    async def feedback_exists(self, feedback_id):
        return feedback_id in self.rows

    async def update_feedback(self, feedback_id, *, title, content_hash, expected_updated_at=None):
        row = self.rows.get(feedback_id)
        if row is None:
            return None
        if expected_updated_at is not None and row["updated_at"] != expected_updated_at:
            return None
        row.update(title=title, content_hash=content_hash, updated_at=self._tick())
        return dict(row)

    async def delete_feedback(self, feedback_id):
        if self.delete_error is not None:
            raise self.delete_error
        return self.rows.pop(feedback_id, None) is not None

    async def list_feedback_by_owner(self, *, owner_id, lab_id=None, offset=0, limit=20):
        rows = [
            r
            for r in self.rows.values()
            if r["owner_id"] == owner_id and (lab_id is None or r["lab_id"] == lab_id)
        ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return [dict(r) for r in rows[offset : offset + limit]], len(rows)


@pytest.fixture
def s3_client():
    client = FakeS3Client()
    client.create_bucket(Bucket=TEST_BUCKET)
    return client


@pytest.fixture
def blob_store(s3_client, monkeypatch):
    store = storage.BlobStore(s3_client, TEST_BUCKET)
    monkeypatch.setattr(storage, "_store", store)
    return store


@pytest.fixture
def metadata_store(monkeypatch):
    fake = FakeMetadataStore()
    for name in (
        "create_feedback",
        "get_feedback",
        "feedback_exists",
        "update_feedback",
        "delete_feedback",
        "list_feedback_by_owner",
    ):
        monkeypatch.setattr(repository, name, getattr(fake, name))
    return fake
