"""
FastAPI router for feedback documents and assets.

Routes only translate between HTTP/WebSocket framing and `service` /
`streaming`; ownership checks live here, consistency logic does not.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Query, UploadFile, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse

from auth import dependencies as auth_dependencies
from core import errors

from . import schemas, service, streaming

router = APIRouter()

logger = logging.getLogger(__name__)


async def _owned_feedback(feedback_id: str, user_id: int) -> schemas.FeedbackSummary:
    summary = await service.get_feedback_metadata(feedback_id)
    if summary.owner_id != user_id:
        raise errors.Forbidden("Unauthorized: You don't own this feedback.", feedback_id=summary.id)
    return summary


@router.post("/feedback", status_code=status.HTTP_201_CREATED)
async def create_feedback(
    request: schemas.CreateFeedbackRequest,
    user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> schemas.FeedbackDocument:
    return await service.create_feedback(
        owner_id=user_id,
        lab_id=request.lab_id,
        title=request.title,
        content=request.content,
    )


@router.get("/feedback")
async def list_feedbacks(
    lab_id: int | None = Query(default=None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(service.DEFAULT_PAGE_LIMIT, ge=1, le=service.MAX_PAGE_LIMIT),
    user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> schemas.FeedbackListResponse:
    feedbacks, total = await service.list_feedbacks(
        owner_id=user_id,
        lab_id=lab_id,
        page=page,
        limit=limit,
    )
    return schemas.FeedbackListResponse(feedbacks=feedbacks, total_count=total, page=page, limit=limit)


@router.get("/feedback/{feedback_id}")
async def get_feedback(
    feedback_id: str,
    user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> schemas.FeedbackDocument:
    summary = await _owned_feedback(feedback_id, user_id)
    return await service.get_feedback(summary.id)


@router.put("/feedback/{feedback_id}")
async def update_feedback(
    feedback_id: str,
    request: schemas.UpdateFeedbackRequest,
    user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> schemas.FeedbackDocument:
    await _owned_feedback(feedback_id, user_id)
    return await service.update_feedback(
        feedback_id,
        title=request.title,
        content=request.content,
        expected_updated_at=request.expected_updated_at,
    )


@router.delete("/feedback/{feedback_id}")
async def delete_feedback(
    feedback_id: str,
    user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> dict:
    summary = await _owned_feedback(feedback_id, user_id)
    removed = await service.delete_feedback(summary.id)
    return {"ok": True, "feedback_id": summary.id, "objects_removed": removed}


@router.get("/feedback/{feedback_id}/assets")
async def list_assets(
    feedback_id: str,
    user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> schemas.AssetListResponse:
    summary = await _owned_feedback(feedback_id, user_id)
    assets = await service.list_assets(summary.id)
    return schemas.AssetListResponse(assets=assets, count=len(assets))


@router.post("/feedback/{feedback_id}/assets", status_code=status.HTTP_201_CREATED)
async def upload_assets(
    feedback_id: str,
    asset: list[UploadFile] = File(...),
    user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> dict:
    """
    Multipart upload of one or more files under the `asset` field.
    """
    summary = await _owned_feedback(feedback_id, user_id)
    max_bytes = streaming.max_asset_bytes_from_env()

    uploaded: list[schemas.UploadAssetResponse] = []
    for file in asset:
        filename = service.validate_filename(file.filename or "")
        data = await file.read()
        if len(data) > max_bytes:
            raise errors.InvalidArgument(f"Asset too large. Max is {max_bytes} bytes.")
        size = await service.upload_asset(summary.id, filename, file.content_type, data)
        uploaded.append(schemas.UploadAssetResponse(filename=filename, size=size))

    return {"files": uploaded, "count": len(uploaded)}


def _content_disposition(filename: str) -> str:
    # filename= stays ASCII for the header; filename* carries the UTF-8 name.
    fallback = filename.encode("ascii", "replace").decode("ascii")
    return f"inline; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


@router.get("/feedback/{feedback_id}/assets/{filename}")
async def download_asset(
    feedback_id: str,
    filename: str,
    user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> StreamingResponse:
    summary = await _owned_feedback(feedback_id, user_id)
    info, data = await service.download_asset(summary.id, filename)
    content_type = info.content_type or service.DEFAULT_ASSET_CONTENT_TYPE
    return StreamingResponse(
        streaming.split_chunks(data),
        media_type=content_type,
        headers={
            "Content-Length": str(len(data)),
            "Content-Disposition": _content_disposition(info.filename),
        },
    )


@router.delete("/feedback/{feedback_id}/assets/{filename}")
async def delete_asset(
    feedback_id: str,
    filename: str,
    user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> dict:
    summary = await _owned_feedback(feedback_id, user_id)
    await service.delete_asset(summary.id, filename)
    return {"ok": True, "feedback_id": summary.id, "filename": filename}


async def _send_error(websocket: WebSocket, exc: errors.FeedbackError) -> None:
    await websocket.send_text(json.dumps({"error": {"kind": exc.kind, "detail": exc.public_detail}}))
    await websocket.close(code=exc.ws_close_code)


async def _upload_frames(websocket: WebSocket) -> AsyncIterator[streaming.UploadMetadata | bytes]:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=message.get("code", 1000))

        chunk = message.get("bytes")
        if chunk is not None:
            yield chunk
            continue

        frame = streaming.decode_text_frame(message.get("text") or "")
        if frame is streaming.END_OF_INPUT:
            return
        yield frame


@router.websocket("/feedback/assets/upload")
async def upload_asset_stream(websocket: WebSocket) -> None:
    """
    Chunked upload: {"metadata": {...}} text frame, binary chunks, {"end": true}.
    """
    await websocket.accept()
    try:
        user_id = auth_dependencies.websocket_user_id(websocket)

        async def _authorize(metadata: streaming.UploadMetadata) -> None:
            service.validate_filename(metadata.filename)
            await _owned_feedback(metadata.feedback_id, user_id)

        result = await streaming.upload_asset_stream(_upload_frames(websocket), on_metadata=_authorize)
    except WebSocketDisconnect:
        logger.info("asset_upload_aborted reason=client_disconnect")
        return
    except errors.FeedbackError as exc:
        if exc.status_code >= 500:
            logger.exception("asset_upload_failed kind=%s", exc.kind)
        await _send_error(websocket, exc)
        return

    await websocket.send_text(
        json.dumps({"filename": result.filename, "size": result.size, "success": result.success})
    )
    await websocket.close(code=1000)


@router.websocket("/feedback/assets/download")
async def download_asset_stream(websocket: WebSocket) -> None:
    """
    Chunked download: client sends {"feedback_id", "filename"}; server answers
    with an info frame followed by binary chunks.
    """
    await websocket.accept()
    try:
        user_id = auth_dependencies.websocket_user_id(websocket)
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=message.get("code", 1000))
        text = message.get("text")
        if text is None:
            raise errors.ProtocolViolation("Download request must be a JSON text frame.")
        try:
            request = json.loads(text)
        except ValueError as exc:
            raise errors.ProtocolViolation("Download request is not valid JSON.") from exc
        if not isinstance(request, dict):
            raise errors.ProtocolViolation("Download request must be a JSON object.")

        summary = await _owned_feedback(str(request.get("feedback_id") or ""), user_id)
        async for frame in streaming.download_asset_stream(summary.id, str(request.get("filename") or "")):
            if isinstance(frame, schemas.AssetInfo):
                await websocket.send_text(json.dumps({"info": frame.model_dump(mode="json")}))
            else:
                await websocket.send_bytes(frame)
    except WebSocketDisconnect:
        logger.info("asset_download_aborted reason=client_disconnect")
        return
    except errors.FeedbackError as exc:
        if exc.status_code >= 500:
            logger.exception("asset_download_failed kind=%s", exc.kind)
        await _send_error(websocket, exc)
        return

    await websocket.close(code=1000)
