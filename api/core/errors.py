"""
Error taxonomy shared by the stores, the coordinator and the transports.

Each kind carries the HTTP status and WebSocket close code the transport layer
maps it to, so routers never need to inspect messages.
"""

from __future__ import annotations


class FeedbackError(RuntimeError):
    kind = "internal"
    status_code = 500
    ws_close_code = 1011

    def __init__(
        self,
        message: str,
        *,
        feedback_id: str | None = None,
        step: str | None = None,
    ) -> None:
        super().__init__(message)
        self.feedback_id = feedback_id
        self.step = step

    def with_context(self, *, step: str, feedback_id: str | None = None) -> "FeedbackError":
        """
        Return a new error of the same kind with operation context prepended.

        Callers raise the result `from` the original so the chain is kept.
        """
        target = feedback_id or self.feedback_id
        where = f"{step} (feedback {target})" if target else step
        return type(self)(f"{where}: {self}", feedback_id=target, step=step)

    @property
    def public_detail(self) -> str:
        return str(self)


class NotFound(FeedbackError):
    kind = "not_found"
    status_code = 404
    ws_close_code = 4404


class Conflict(FeedbackError):
    kind = "conflict"
    status_code = 409
    ws_close_code = 4409


class StorageWriteFailed(FeedbackError):
    kind = "storage_write_failed"

    @property
    def public_detail(self) -> str:
        return "Storage write failed."


class StorageReadFailed(FeedbackError):
    kind = "storage_read_failed"

    @property
    def public_detail(self) -> str:
        return "Storage read failed."


class ProtocolViolation(FeedbackError):
    kind = "protocol_violation"
    status_code = 400
    ws_close_code = 1008


class InvalidArgument(FeedbackError):
    kind = "invalid_argument"
    status_code = 400
    ws_close_code = 1008


class Unauthorized(FeedbackError):
    kind = "unauthorized"
    status_code = 401
    ws_close_code = 4401


class Forbidden(FeedbackError):
    kind = "forbidden"
    status_code = 403
    ws_close_code = 4403
