"""
Feedback persistence.
This module is where feedback-related SQL lives.

Only metadata is stored here; the markdown body and assets are in object
storage. Schema comes from the dbmate migration:
- feedback_files(id uuid, owner_id, lab_id, title, content_hash, created_at, updated_at)
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import asyncpg

from core import db, errors

_COLUMNS = "id, owner_id, lab_id, title, content_hash, created_at, updated_at"

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


@contextmanager
def _translate(error_cls: type[errors.FeedbackError], action: str) -> Iterator[None]:
    try:
        yield
    except _DB_ERRORS as exc:
        raise error_cls(f"Failed to {action}: {exc}") from exc


def _row(row: dict[str, Any] | None) -> dict[str, Any] | None:
    # asyncpg hands back uuid.UUID; the rest of the app uses strings.
    if row is None:
        return None
    row = dict(row)
    row["id"] = str(row["id"])
    return row


async def create_feedback(
    *,
    owner_id: int,
    lab_id: int,
    title: str,
    content_hash: str,
) -> dict[str, Any]:
    """
    Insert a feedback row with a fresh id. The DB assigns both timestamps.
    """
    feedback_id = uuid.uuid4()
    with _translate(errors.StorageWriteFailed, f"insert feedback {feedback_id}"):
        row = await db.fetch_one(
            f"""
            INSERT INTO feedback_files (id, owner_id, lab_id, title, content_hash, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, now(), now())
            RETURNING {_COLUMNS}
            """,
            feedback_id,
            owner_id,
            lab_id,
            title,
            content_hash,
        )
    if row is None:
        raise errors.StorageWriteFailed(f"Failed to insert feedback {feedback_id}.")
    return _row(row)


async def get_feedback(feedback_id: str) -> dict[str, Any] | None:
    with _translate(errors.StorageReadFailed, f"read feedback {feedback_id}"):
        row = await db.fetch_one(
            f"""
            SELECT {_COLUMNS}
            FROM feedback_files
            WHERE id = $1
            """,
            uuid.UUID(feedback_id),
        )
    return _row(row)


async def feedback_exists(feedback_id: str) -> bool:
    with _translate(errors.StorageReadFailed, f"check feedback {feedback_id}"):
        found = await db.fetch_val(
            "SELECT 1 FROM feedback_files WHERE id = $1 LIMIT 1",
            uuid.UUID(feedback_id),
        )
    return found is not None


async def update_feedback(
    feedback_id: str,
    *,
    title: str,
    content_hash: str,
    expected_updated_at: datetime | None = None,
) -> dict[str, Any] | None:
    """
    Overwrite title/content_hash and bump updated_at.

    With `expected_updated_at` the row is only touched if it was not modified
    in between. Returns None when no row matched (missing or stale).
    """
    with _translate(errors.StorageWriteFailed, f"update feedback {feedback_id}"):
        row = await db.fetch_one(
            f"""
            UPDATE feedback_files
            SET title = $2,
                content_hash = $3,
                updated_at = now()
            WHERE id = $1
              AND ($4::timestamptz IS NULL OR updated_at = $4::timestamptz)
            RETURNING {_COLUMNS}
            """,
            uuid.UUID(feedback_id),
            title,
            content_hash,
            expected_updated_at,
        )
    return _row(row)


async def delete_feedback(feedback_id: str) -> bool:
    """
    Hard-delete a feedback row. False when nothing was deleted.
    """
    with _translate(errors.StorageWriteFailed, f"delete feedback {feedback_id}"):
        status = await db.execute(
            "DELETE FROM feedback_files WHERE id = $1",
            uuid.UUID(feedback_id),
        )
    return db.rows_affected(status) > 0


async def list_feedback_by_owner(
    *,
    owner_id: int,
    lab_id: int | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[dict[str, Any]], int]:
    """
    One page of an owner's feedback, newest first, plus the unpaged total.
    """
    with _translate(errors.StorageReadFailed, f"list feedback for owner {owner_id}"):
        total = await db.fetch_val(
            """
            SELECT count(*)
            FROM feedback_files
            WHERE owner_id = $1
              AND ($2::bigint IS NULL OR lab_id = $2::bigint)
            """,
            owner_id,
            lab_id,
        )
        rows = await db.fetch_all(
            f"""
            SELECT {_COLUMNS}
            FROM feedback_files
            WHERE owner_id = $1
              AND ($2::bigint IS NULL OR lab_id = $2::bigint)
            ORDER BY created_at DESC, id DESC
            LIMIT $3
            OFFSET $4
            """,
            owner_id,
            lab_id,
            limit,
            offset,
        )
    return [_row(r) for r in rows], int(total or 0)
