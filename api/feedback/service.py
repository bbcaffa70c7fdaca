"""
Feedback business logic.

Metadata (Postgres) and content/assets (object storage) are two stores with no
shared transaction. Every operation here orders its writes so that a failure
leaves the smallest possible inconsistency, and compensates where it can:

- create: insert row -> put content; a failed put deletes the row again.
- update: update row -> put content; a failed put is reported, not rolled back.
- delete: delete blob prefix -> delete row; a failed blob delete leaves the
  document untouched.

Assets have no rows: their existence is whatever the object store lists.
Nothing is retried here.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from core import errors, storage

from . import hashing, repository, schemas

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100
MAX_FILENAME_LENGTH = 255
DEFAULT_ASSET_CONTENT_TYPE = "application/octet-stream"

logger = logging.getLogger(__name__)


def _check_id(feedback_id: str) -> str:
    raw = (feedback_id or "").strip()
    try:
        return str(uuid.UUID(raw))
    except ValueError as exc:
        # Ids are UUIDs; anything else cannot exist in either store.
        raise errors.NotFound(f"Feedback {raw!r} not found.", feedback_id=raw) from exc


def validate_filename(filename: str) -> str:
    name = (filename or "").strip()
    if not name:
        raise errors.InvalidArgument("Asset filename is required.")
    if name in {".", ".."} or any(c in '/\\"' or ord(c) < 32 or c == "\x7f" for c in name):
        # Names end up in object keys and in Content-Disposition.
        raise errors.InvalidArgument(f"Invalid asset filename {name!r}.")
    if len(name) > MAX_FILENAME_LENGTH:
        raise errors.InvalidArgument(f"Asset filename is longer than {MAX_FILENAME_LENGTH} characters.")
    return name


def _to_summary(row: dict) -> schemas.FeedbackSummary:
    return schemas.FeedbackSummary(
        id=str(row["id"]),
        owner_id=int(row["owner_id"]),
        lab_id=int(row["lab_id"]),
        title=str(row["title"]),
        content_hash=str(row["content_hash"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _to_document(row: dict, content: str) -> schemas.FeedbackDocument:
    return schemas.FeedbackDocument(content=content, **_to_summary(row).model_dump())


def _to_asset(info: storage.ObjectInfo, filename: str) -> schemas.AssetInfo:
    return schemas.AssetInfo(
        filename=filename,
        size=info.size,
        content_type=info.content_type,
        uploaded_at=info.last_modified,
    )


async def _read_row(feedback_id: str, *, step: str) -> dict:
    try:
        row = await repository.get_feedback(feedback_id)
    except errors.FeedbackError as exc:
        raise exc.with_context(step=step, feedback_id=feedback_id) from exc
    if row is None:
        raise errors.NotFound(f"Feedback {feedback_id} not found.", feedback_id=feedback_id, step=step)
    return row


async def _read_content(feedback_id: str, *, step: str) -> str:
    try:
        data = await storage.blob_store().get(hashing.content_key(feedback_id))
    except errors.NotFound as exc:
        logger.warning("feedback_content_missing id=%s step=%s", feedback_id, step)
        raise exc.with_context(step=step, feedback_id=feedback_id) from exc
    except errors.FeedbackError as exc:
        raise exc.with_context(step=step, feedback_id=feedback_id) from exc
    return data.decode("utf-8", errors="replace")


async def create_feedback(
    *,
    owner_id: int,
    lab_id: int,
    title: str,
    content: str,
) -> schemas.FeedbackDocument:
    content = content or ""
    digest = hashing.content_hash(content)

    try:
        row = await repository.create_feedback(
            owner_id=owner_id,
            lab_id=lab_id,
            title=title,
            content_hash=digest,
        )
    except errors.FeedbackError as exc:
        raise exc.with_context(step="create metadata") from exc

    feedback_id = str(row["id"])
    try:
        await storage.blob_store().put(
            hashing.content_key(feedback_id),
            content.encode("utf-8"),
            hashing.CONTENT_TYPE_MARKDOWN,
        )
    except errors.FeedbackError as put_exc:
        await _compensate_create(feedback_id, put_exc)

    logger.info(
        "feedback_created id=%s owner_id=%s lab_id=%s hash=%s",
        feedback_id,
        owner_id,
        lab_id,
        digest,
    )
    return _to_document(row, content)


async def _compensate_create(feedback_id: str, put_exc: errors.FeedbackError) -> None:
    """
    Undo the metadata insert after a failed content write, then fail.

    Always raises StorageWriteFailed chained to the content write error.
    """
    logger.warning("feedback_create_compensating id=%s cause=%s", feedback_id, put_exc)
    try:
        deleted = await repository.delete_feedback(feedback_id)
    except errors.FeedbackError as rollback_exc:
        logger.error(
            "feedback_orphaned_record id=%s write_error=%s rollback_error=%s",
            feedback_id,
            put_exc,
            rollback_exc,
        )
        raise errors.StorageWriteFailed(
            f"Failed to upload content to storage: {put_exc}; "
            f"rollback of metadata also failed, record {feedback_id} is orphaned: {rollback_exc}",
            feedback_id=feedback_id,
            step="create content",
        ) from put_exc

    if not deleted:
        logger.warning("feedback_create_rollback_noop id=%s", feedback_id)
    raise errors.StorageWriteFailed(
        f"Failed to upload content to storage: {put_exc}",
        feedback_id=feedback_id,
        step="create content",
    ) from put_exc


async def get_feedback_metadata(feedback_id: str) -> schemas.FeedbackSummary:
    feedback_id = _check_id(feedback_id)
    row = await _read_row(feedback_id, step="get metadata")
    return _to_summary(row)


async def get_feedback(feedback_id: str) -> schemas.FeedbackDocument:
    feedback_id = _check_id(feedback_id)
    row = await _read_row(feedback_id, step="get metadata")
    content = await _read_content(feedback_id, step="get content")
    return _to_document(row, content)


async def update_feedback(
    feedback_id: str,
    *,
    title: str | None = None,
    content: str | None = None,
    expected_updated_at: datetime | None = None,
) -> schemas.FeedbackDocument:
    """
    Partial update. None and "" both mean "leave this field unchanged".
    """
    feedback_id = _check_id(feedback_id)
    existing = await _read_row(feedback_id, step="update read")

    new_title = title if title else str(existing["title"])
    content_changed = bool(content)
    new_hash = hashing.content_hash(content) if content_changed else str(existing["content_hash"])
    stored = None if content_changed else await _read_content(feedback_id, step="update read content")

    try:
        row = await repository.update_feedback(
            feedback_id,
            title=new_title,
            content_hash=new_hash,
            expected_updated_at=expected_updated_at,
        )
    except errors.FeedbackError as exc:
        raise exc.with_context(step="update metadata", feedback_id=feedback_id) from exc

    if row is None:
        if expected_updated_at is not None and await repository.feedback_exists(feedback_id):
            raise errors.Conflict(
                f"Feedback {feedback_id} was modified since {expected_updated_at.isoformat()}.",
                feedback_id=feedback_id,
                step="update metadata",
            )
        raise errors.NotFound(
            f"Feedback {feedback_id} not found.",
            feedback_id=feedback_id,
            step="update metadata",
        )

    if stored is not None:
        logger.info("feedback_updated id=%s content_changed=false", feedback_id)
        return _to_document(row, stored)

    try:
        await storage.blob_store().put(
            hashing.content_key(feedback_id),
            content.encode("utf-8"),
            hashing.CONTENT_TYPE_MARKDOWN,
        )
    except errors.FeedbackError as exc:
        # Metadata already carries the new hash; left as is and surfaced.
        logger.error(
            "feedback_hash_mismatch id=%s hash=%s error=%s",
            feedback_id,
            new_hash,
            exc,
        )
        raise errors.StorageWriteFailed(
            f"Failed to update content in storage: {exc}",
            feedback_id=feedback_id,
            step="update content",
        ) from exc

    logger.info("feedback_updated id=%s content_changed=true hash=%s", feedback_id, new_hash)
    return _to_document(row, content)


async def delete_feedback(feedback_id: str) -> int:
    """
    Remove content + assets, then the metadata row.

    Returns the number of objects removed from storage.
    """
    feedback_id = _check_id(feedback_id)

    try:
        removed = await storage.blob_store().delete_prefix(hashing.document_prefix(feedback_id))
    except errors.FeedbackError as exc:
        raise exc.with_context(step="delete storage", feedback_id=feedback_id) from exc

    try:
        deleted = await repository.delete_feedback(feedback_id)
    except errors.FeedbackError as exc:
        logger.error(
            "feedback_orphaned_metadata id=%s objects_removed=%s error=%s",
            feedback_id,
            removed,
            exc,
        )
        raise exc.with_context(step="delete metadata", feedback_id=feedback_id) from exc

    if not deleted:
        raise errors.NotFound(
            f"Feedback {feedback_id} not found.",
            feedback_id=feedback_id,
            step="delete metadata",
        )

    logger.info("feedback_deleted id=%s objects_removed=%s", feedback_id, removed)
    return removed


async def list_feedbacks(
    *,
    owner_id: int,
    lab_id: int | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
) -> tuple[list[schemas.FeedbackSummary], int]:
    if limit <= 0:
        limit = DEFAULT_PAGE_LIMIT
    limit = min(limit, MAX_PAGE_LIMIT)
    if page <= 0:
        page = 1
    if lab_id is not None and lab_id <= 0:
        lab_id = None

    rows, total = await repository.list_feedback_by_owner(
        owner_id=owner_id,
        lab_id=lab_id,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return [_to_summary(r) for r in rows], total


async def upload_asset(
    feedback_id: str,
    filename: str,
    content_type: str | None,
    data: bytes,
) -> int:
    """
    Store (or replace) one asset. Returns the number of bytes written.
    """
    feedback_id = _check_id(feedback_id)
    filename = validate_filename(filename)
    content_type = (content_type or "").strip() or DEFAULT_ASSET_CONTENT_TYPE

    try:
        await storage.blob_store().put(hashing.asset_key(feedback_id, filename), data, content_type)
    except errors.FeedbackError as exc:
        raise exc.with_context(step=f"upload asset {filename}", feedback_id=feedback_id) from exc

    logger.info("asset_uploaded feedback_id=%s filename=%s size=%s", feedback_id, filename, len(data))
    return len(data)


async def download_asset(feedback_id: str, filename: str) -> tuple[schemas.AssetInfo, bytes]:
    feedback_id = _check_id(feedback_id)
    filename = validate_filename(filename)
    key = hashing.asset_key(feedback_id, filename)
    store = storage.blob_store()

    try:
        data = await store.get(key)
    except errors.FeedbackError as exc:
        raise exc.with_context(step=f"download asset {filename}", feedback_id=feedback_id) from exc

    # Separate round trip; the object may be gone by now.
    try:
        info = await store.stat(key)
    except errors.FeedbackError as exc:
        raise exc.with_context(step=f"stat asset {filename}", feedback_id=feedback_id) from exc

    return _to_asset(info, filename), data


async def list_assets(feedback_id: str) -> list[schemas.AssetInfo]:
    feedback_id = _check_id(feedback_id)
    prefix = hashing.assets_prefix(feedback_id)

    try:
        objects = await storage.blob_store().list(prefix, with_metadata=True)
    except errors.FeedbackError as exc:
        raise exc.with_context(step="list assets", feedback_id=feedback_id) from exc

    return [_to_asset(info, info.key[len(prefix):]) for info in objects]


async def delete_asset(feedback_id: str, filename: str) -> None:
    feedback_id = _check_id(feedback_id)
    filename = validate_filename(filename)
    key = hashing.asset_key(feedback_id, filename)
    store = storage.blob_store()

    try:
        if not await store.exists(key):
            raise errors.NotFound(f"Asset {filename} not found.", feedback_id=feedback_id)
        await store.delete(key)
    except errors.FeedbackError as exc:
        raise exc.with_context(step=f"delete asset {filename}", feedback_id=feedback_id) from exc

    logger.info("asset_deleted feedback_id=%s filename=%s", feedback_id, filename)
