"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from study_pipeline.gateway.types import ChatMessage


class UploadResponse(BaseModel):
    storage_path: str
    url: str
    file_name: str
    mime_type: str
    size: int
    original_size: int


class UploadStatusResponse(BaseModel):
    file_id: str
    file_name: str
    storage_path: str
    total_size: int
    chunk_size: int
    total_chunks: int
    uploaded_chunks: list[int]
    updated_at: datetime


class DiscardResponse(BaseModel):
    status: str
    file_id: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)


class ChatResponse(BaseModel):
    content: str


class TranscriptionResponse(BaseModel):
    text: str


class QuotaResponse(BaseModel):
    user_id: str
    limit: int
    used: int
    remaining: int
    reset_at: datetime
    lifetime_used: int
    lifetime_limit: int | None = None


__all__ = [
    "UploadResponse",
    "UploadStatusResponse",
    "DiscardResponse",
    "ChatRequest",
    "ChatResponse",
    "TranscriptionResponse",
    "QuotaResponse",
]
