"""
Chunked asset transfer.

Upload: the transport hands us an ordered stream of frames. The first one must
be an `UploadMetadata` frame, every later one is a raw `bytes` chunk. Chunks
are concatenated in arrival order and the asset is written only once the
stream ends cleanly, so an aborted upload never leaves a partial object.

Download: one `AssetInfo` frame, then the payload in fixed 64 KiB chunks
(the last one may be shorter).

Both directions hold the whole payload in memory for one request.
"""

from __future__ import annotations

import enum
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Any

from core import errors, settings

from . import schemas, service

ASSET_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_ASSET_BYTES = 100 * 1024 * 1024  # 100 MiB

logger = logging.getLogger(__name__)


def max_asset_bytes_from_env() -> int:
    value = settings.env_int("MAX_ASSET_BYTES", DEFAULT_MAX_ASSET_BYTES)
    return value if value > 0 else DEFAULT_MAX_ASSET_BYTES


@dataclass(frozen=True)
class UploadMetadata:
    feedback_id: str
    filename: str
    content_type: str
    total_size: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> "UploadMetadata":
        if not isinstance(data, dict):
            raise errors.ProtocolViolation("Metadata frame must be an object.")
        feedback_id = str(data.get("feedback_id") or "").strip()
        filename = str(data.get("filename") or "").strip()
        if not feedback_id or not filename:
            raise errors.ProtocolViolation("Metadata frame needs feedback_id and filename.")
        try:
            total_size = int(data.get("total_size") or 0)
        except (TypeError, ValueError) as exc:
            raise errors.ProtocolViolation("Metadata total_size must be an integer.") from exc
        return cls(
            feedback_id=feedback_id,
            filename=filename,
            content_type=str(data.get("content_type") or ""),
            total_size=max(total_size, 0),
        )


@dataclass(frozen=True)
class UploadResult:
    filename: str
    size: int
    success: bool = True


class UploadState(enum.Enum):
    AWAITING_METADATA = "awaiting_metadata"
    RECEIVING_CHUNKS = "receiving_chunks"
    COMPLETE = "complete"


class AssetUpload:
    """
    Upload state machine: AWAITING_METADATA -> RECEIVING_CHUNKS -> COMPLETE.
    """

    def __init__(self, *, max_bytes: int | None = None) -> None:
        self.state = UploadState.AWAITING_METADATA
        self.metadata: UploadMetadata | None = None
        self.max_bytes = max_bytes
        self._buffer = bytearray()

    @property
    def received(self) -> int:
        return len(self._buffer)

    def accept(self, frame: UploadMetadata | bytes) -> None:
        if self.state is UploadState.COMPLETE:
            raise errors.ProtocolViolation("Upload already completed.")

        if self.state is UploadState.AWAITING_METADATA:
            if not isinstance(frame, UploadMetadata):
                raise errors.ProtocolViolation("First message must contain metadata.")
            self.metadata = frame
            self.state = UploadState.RECEIVING_CHUNKS
            return

        if isinstance(frame, UploadMetadata):
            raise errors.ProtocolViolation("Metadata frame received after chunks started.")
        if not isinstance(frame, (bytes, bytearray, memoryview)):
            raise errors.ProtocolViolation(f"Unexpected frame type {type(frame).__name__}.")

        if self.max_bytes is not None and len(self._buffer) + len(frame) > self.max_bytes:
            raise errors.ProtocolViolation(f"Asset too large. Max is {self.max_bytes} bytes.")
        self._buffer.extend(frame)

    def finish(self) -> tuple[UploadMetadata, bytes]:
        if self.metadata is None:
            raise errors.ProtocolViolation("Stream ended before metadata was received.")
        self.state = UploadState.COMPLETE
        if self.metadata.total_size and self.metadata.total_size != len(self._buffer):
            # total_size is only a sizing hint.
            logger.debug(
                "asset_upload_size_mismatch filename=%s expected=%s received=%s",
                self.metadata.filename,
                self.metadata.total_size,
                len(self._buffer),
            )
        return self.metadata, bytes(self._buffer)


async def receive_upload(
    frames: AsyncIterator[UploadMetadata | bytes],
    *,
    max_bytes: int | None = None,
    on_metadata: Callable[[UploadMetadata], Awaitable[Any]] | None = None,
) -> tuple[UploadMetadata, bytes]:
    """
    Drain `frames` into one payload. Exhaustion of the iterator is the
    graceful end of input; anything it raises aborts the upload.

    `on_metadata` runs once the metadata frame is accepted, before any chunk
    is read; raising from it aborts the upload.
    """
    upload = AssetUpload(max_bytes=max_bytes)
    async for frame in frames:
        awaiting = upload.state is UploadState.AWAITING_METADATA
        upload.accept(frame)
        if awaiting and on_metadata is not None:
            await on_metadata(upload.metadata)
    return upload.finish()


async def upload_asset_stream(
    frames: AsyncIterator[UploadMetadata | bytes],
    *,
    max_bytes: int | None = None,
    on_metadata: Callable[[UploadMetadata], Awaitable[Any]] | None = None,
) -> UploadResult:
    """
    Receive a full upload and store it. `on_metadata` is the transport's
    access check; nothing is written if it raises.
    """
    metadata, payload = await receive_upload(
        frames,
        max_bytes=max_bytes if max_bytes is not None else max_asset_bytes_from_env(),
        on_metadata=on_metadata,
    )
    size = await service.upload_asset(
        metadata.feedback_id,
        metadata.filename,
        metadata.content_type,
        payload,
    )
    return UploadResult(filename=metadata.filename, size=size, success=True)


def split_chunks(data: bytes, chunk_size: int = ASSET_CHUNK_SIZE) -> Iterator[bytes]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    for start in range(0, len(data), chunk_size):
        yield data[start : start + chunk_size]


async def download_asset_stream(
    feedback_id: str,
    filename: str,
    *,
    chunk_size: int = ASSET_CHUNK_SIZE,
) -> AsyncIterator[schemas.AssetInfo | bytes]:
    info, data = await service.download_asset(feedback_id, filename)
    yield info
    for chunk in split_chunks(data, chunk_size):
        yield chunk


class EndOfInput:
    """
    Marker returned by `decode_text_frame` for the client's end frame.
    """


END_OF_INPUT = EndOfInput()


def decode_text_frame(text: str) -> UploadMetadata | EndOfInput:
    """
    Decode a JSON control frame of the WebSocket upload protocol:

    - {"metadata": {"feedback_id", "filename", "content_type", "total_size"}}
    - {"end": true}
    """
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise errors.ProtocolViolation("Control frame is not valid JSON.") from exc
    if not isinstance(payload, dict):
        raise errors.ProtocolViolation("Control frame must be a JSON object.")

    if "metadata" in payload:
        return UploadMetadata.from_dict(payload["metadata"])
    if payload.get("end") is True:
        return END_OF_INPUT
    raise errors.ProtocolViolation("Unknown control frame.")
