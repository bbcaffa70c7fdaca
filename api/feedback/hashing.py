"""
Content addressing: document digests and blob key layout.

Object layout per document:
- <id>/content.md          markdown body
- <id>/assets/<filename>   attachments
"""

from __future__ import annotations

import hashlib

CONTENT_FILENAME = "content.md"
CONTENT_TYPE_MARKDOWN = "text/markdown"
ASSETS_DIR = "assets"


def content_hash(content: str) -> str:
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


def document_prefix(feedback_id: str) -> str:
    return f"{feedback_id}/"


def content_key(feedback_id: str) -> str:
    return f"{feedback_id}/{CONTENT_FILENAME}"


def assets_prefix(feedback_id: str) -> str:
    return f"{feedback_id}/{ASSETS_DIR}/"


def asset_key(feedback_id: str, filename: str) -> str:
    return f"{assets_prefix(feedback_id)}{filename}"
