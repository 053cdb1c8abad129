"""Generation API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, Header, UploadFile

from study_pipeline.api.dependencies import get_gateway
from study_pipeline.gateway import AIInvocationGateway, ChatOptions
from study_pipeline.gateway.types import DEFAULT_AUDIO_MIME
from study_pipeline.ingest.types import MediaFile
from study_pipeline.models.dto import ChatRequest, ChatResponse, TranscriptionResponse

router = APIRouter()


@router.post("/chat", response_model=ChatResponse, summary="Run a chat completion")
async def chat(
    request: ChatRequest,
    x_user_id: str | None = Header(default=None),
    gateway: AIInvocationGateway = Depends(get_gateway),
) -> ChatResponse:
    options = ChatOptions(model=request.model, temperature=request.temperature, user_id=x_user_id)
    content = await gateway.invoke_chat(request.messages, options)
    return ChatResponse(content=content)


@router.post("/transcription", response_model=TranscriptionResponse, summary="Transcribe audio")
async def transcribe(
    audio: UploadFile | None = File(default=None),
    storage_path: str | None = Form(default=None),
    x_user_id: str | None = Header(default=None),
    gateway: AIInvocationGateway = Depends(get_gateway),
) -> TranscriptionResponse:
    media = None
    if audio is not None:
        media = MediaFile(
            name=audio.filename or "recording.webm",
            data=await audio.read(),
            mime_type=audio.content_type or DEFAULT_AUDIO_MIME,
        )
    text = await gateway.invoke_transcription(media, storage_path_hint=storage_path, user_id=x_user_id)
    return TranscriptionResponse(text=text)


__all__ = ["router"]
