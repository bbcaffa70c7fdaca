"""
Feedback API schemas (request/response models).
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class FeedbackSummary(BaseModel):
    id: str
    owner_id: int
    lab_id: int
    title: str
    content_hash: str
    created_at: datetime
    updated_at: datetime


class FeedbackDocument(FeedbackSummary):
    content: str


class AssetInfo(BaseModel):
    filename: str
    size: int
    content_type: str
    uploaded_at: datetime | None = None


class CreateFeedbackRequest(BaseModel):
    lab_id: int = Field(..., ge=0)
    title: str = Field(..., max_length=500)
    content: str = Field(..., max_length=5 * 1024 * 1024)


class UpdateFeedbackRequest(BaseModel):
    # Omitted or empty fields are left unchanged.
    title: str | None = Field(default=None, max_length=500)
    content: str | None = Field(default=None, max_length=5 * 1024 * 1024)
    # Optimistic concurrency: reject the update if the row changed since.
    expected_updated_at: datetime | None = None


class FeedbackListResponse(BaseModel):
    feedbacks: list[FeedbackSummary]
    total_count: int
    page: int
    limit: int


class AssetListResponse(BaseModel):
    assets: list[AssetInfo]
    count: int


class UploadAssetResponse(BaseModel):
    filename: str
    size: int
    success: bool = True
