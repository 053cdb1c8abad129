"""Upload API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile

from study_pipeline.api.dependencies import get_ingest_pipeline, get_uploader
from study_pipeline.ingest.pipeline import IngestPipeline
from study_pipeline.ingest.types import MediaFile
from study_pipeline.ingest.uploader import ChunkedUploadManager
from study_pipeline.models.dto import DiscardResponse, UploadResponse, UploadStatusResponse

router = APIRouter()


@router.post("", response_model=UploadResponse, summary="Preprocess and store a file")
async def create_upload(
    file: UploadFile = File(...),
    file_id: str | None = Form(default=None),
    x_user_id: str | None = Header(default=None),
    pipeline: IngestPipeline = Depends(get_ingest_pipeline),
) -> UploadResponse:
    media = MediaFile(
        name=file.filename or "upload.bin",
        data=await file.read(),
        mime_type=file.content_type or "application/octet-stream",
    )
    result = await pipeline.ingest(media, user_id=x_user_id or "", file_id=file_id)
    return UploadResponse(**result.to_dict())


@router.get("/{file_id}", response_model=UploadStatusResponse, summary="Progress of an unfinished upload")
async def get_upload(file_id: str, uploader: ChunkedUploadManager = Depends(get_uploader)) -> UploadStatusResponse:
    state = uploader.status(file_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return UploadStatusResponse(**state.model_dump(exclude={"created_at"}))


@router.delete("/{file_id}", response_model=DiscardResponse, summary="Discard an unfinished upload")
async def discard_upload(file_id: str, uploader: ChunkedUploadManager = Depends(get_uploader)) -> DiscardResponse:
    if not await uploader.discard(file_id):
        raise HTTPException(status_code=404, detail="Upload not found")
    return DiscardResponse(status="ok", file_id=file_id)


__all__ = ["router"]
