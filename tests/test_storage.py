"""Unit tests for the S3-backed BlobStore."""

import asyncio

import pytest

from conftest import TEST_BUCKET, FakeS3Client, client_error
from core import errors, storage


class TestBlobStoreObjects:
    """Single-object operations."""

    def test_put_get_round_trip(self, blob_store):
        asyncio.run(blob_store.put("a/content.md", b"# hi", "text/markdown"))

        assert asyncio.run(blob_store.get("a/content.md")) == b"# hi"
        info = asyncio.run(blob_store.stat("a/content.md"))
        assert info.size == 4
        assert info.content_type == "text/markdown"
        assert info.last_modified is not None

    def test_put_replaces_existing_object(self, blob_store):
        asyncio.run(blob_store.put("a/x.bin", b"first", "application/octet-stream"))
        asyncio.run(blob_store.put("a/x.bin", b"second!", "image/png"))

        assert asyncio.run(blob_store.get("a/x.bin")) == b"second!"
        assert asyncio.run(blob_store.stat("a/x.bin")).content_type == "image/png"

    def test_missing_object_raises_not_found(self, blob_store):
        with pytest.raises(errors.NotFound):
            asyncio.run(blob_store.get("nope"))
        with pytest.raises(errors.NotFound):
            asyncio.run(blob_store.stat("nope"))
        assert asyncio.run(blob_store.exists("nope")) is False

    def test_write_failure_is_wrapped(self, blob_store, s3_client):
        cause = client_error("AccessDenied", "PutObject")
        s3_client.fail("put_object", cause)

        with pytest.raises(errors.StorageWriteFailed) as excinfo:
            asyncio.run(blob_store.put("a/content.md", b"x", "text/markdown"))
        assert excinfo.value.__cause__ is cause

    def test_read_failure_is_wrapped(self, blob_store, s3_client):
        s3_client.fail("get_object", client_error("InternalError", "GetObject"))

        with pytest.raises(errors.StorageReadFailed):
            asyncio.run(blob_store.get("a/content.md"))

    def test_delete_single_object(self, blob_store, s3_client):
        asyncio.run(blob_store.put("a/x", b"1", "text/plain"))
        asyncio.run(blob_store.delete("a/x"))
        assert s3_client.keys() == []


class TestBlobStoreListing:
    """Prefix listing and prefix deletion."""

    def test_list_is_recursive_and_prefix_scoped(self, blob_store):
        for key in ["f1/assets/b.txt", "f1/assets/a.txt", "f1/assets/sub/c.txt", "f1/content.md", "f2/assets/a.txt"]:
            asyncio.run(blob_store.put(key, b"abc", "text/plain"))

        objects = asyncio.run(blob_store.list("f1/assets/"))

        assert [o.key for o in objects] == ["f1/assets/a.txt", "f1/assets/b.txt", "f1/assets/sub/c.txt"]
        assert all(o.size == 3 for o in objects)
        assert all(o.content_type == "" for o in objects)

    def test_list_with_metadata_fills_content_type(self, blob_store):
        asyncio.run(blob_store.put("f1/assets/a.png", b"\x89PNG", "image/png"))

        objects = asyncio.run(blob_store.list("f1/assets/", with_metadata=True))

        assert objects[0].content_type == "image/png"

    def test_list_follows_pagination(self, monkeypatch):
        client = FakeS3Client(page_size=2)
        client.create_bucket(Bucket=TEST_BUCKET)
        store = storage.BlobStore(client, TEST_BUCKET)
        for i in range(5):
            asyncio.run(store.put(f"f1/assets/{i}.txt", b"x", "text/plain"))

        objects = asyncio.run(store.list("f1/assets/"))

        assert [o.key for o in objects] == [f"f1/assets/{i}.txt" for i in range(5)]

    def test_delete_prefix_removes_everything_under_prefix(self):
        client = FakeS3Client(page_size=2)
        client.create_bucket(Bucket=TEST_BUCKET)
        store = storage.BlobStore(client, TEST_BUCKET)
        for key in ["f1/content.md", "f1/assets/a", "f1/assets/b", "f1/assets/c", "f10/content.md"]:
            asyncio.run(store.put(key, b"x", "text/plain"))

        removed = asyncio.run(store.delete_prefix("f1/"))

        assert removed == 4
        assert client.keys() == ["f10/content.md"]

    def test_delete_prefix_on_empty_prefix_is_noop(self, blob_store):
        assert asyncio.run(blob_store.delete_prefix("missing/")) == 0

    def test_delete_prefix_reports_per_object_failures(self, blob_store, s3_client):
        asyncio.run(blob_store.put("f1/content.md", b"x", "text/markdown"))
        asyncio.run(blob_store.put("f1/assets/a", b"x", "text/plain"))
        s3_client.delete_errors.add("f1/assets/a")

        with pytest.raises(errors.StorageWriteFailed, match="f1/assets/a"):
            asyncio.run(blob_store.delete_prefix("f1/"))

    def test_delete_prefix_refuses_empty_prefix(self, blob_store):
        with pytest.raises(ValueError):
            asyncio.run(blob_store.delete_prefix(""))


class TestBucketLifecycle:
    """ensure_bucket and the module-level store."""

    def test_ensure_bucket_creates_missing_bucket_once(self):
        client = FakeS3Client()
        store = storage.BlobStore(client, "fresh-bucket")

        asyncio.run(store.ensure_bucket())
        asyncio.run(store.ensure_bucket())

        assert "fresh-bucket" in client.buckets

    def test_ensure_bucket_surfaces_other_errors(self, s3_client):
        s3_client.fail("head_bucket", client_error("AccessDenied", "HeadBucket"))
        store = storage.BlobStore(s3_client, TEST_BUCKET)

        with pytest.raises(errors.StorageReadFailed):
            asyncio.run(store.ensure_bucket())

    def test_blob_store_requires_initialisation(self, monkeypatch):
        monkeypatch.setattr(storage, "_store", None)
        with pytest.raises(RuntimeError, match="not initialized"):
            storage.blob_store()

    def test_endpoint_url_from_env(self, monkeypatch):
        monkeypatch.setenv("MINIO_ENDPOINT", "minio:9000")
        monkeypatch.setenv("MINIO_USE_SSL", "true")
        assert storage.minio_endpoint_url() == "https://minio:9000"

        monkeypatch.setenv("MINIO_ENDPOINT", "http://localhost:9000/")
        assert storage.minio_endpoint_url() == "http://localhost:9000"
