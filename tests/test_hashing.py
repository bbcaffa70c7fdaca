"""Unit tests for content hashing and blob key layout."""

from feedback import hashing

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_content_hash_is_sha256_hex():
    assert hashing.content_hash("") == EMPTY_SHA256
    assert hashing.content_hash("# Notes") == hashing.content_hash("# Notes")
    assert len(hashing.content_hash("# Notes")) == 64


def test_content_hash_detects_changes():
    assert hashing.content_hash("a") != hashing.content_hash("b")
    # Non-ASCII text is hashed as UTF-8.
    assert hashing.content_hash("héllo") != hashing.content_hash("hello")


def test_key_layout():
    fid = "0b7e4c1a-2f55-4c3d-9a2e-4f9d2b0c8e11"
    assert hashing.document_prefix(fid) == f"{fid}/"
    assert hashing.content_key(fid) == f"{fid}/content.md"
    assert hashing.assets_prefix(fid) == f"{fid}/assets/"
    assert hashing.asset_key(fid, "diagram.png") == f"{fid}/assets/diagram.png"
    assert hashing.asset_key(fid, "x").startswith(hashing.document_prefix(fid))
