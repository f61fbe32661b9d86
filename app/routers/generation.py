# app/routers/generation.py
from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status
from typing import Optional
import logging

from app.core.auth import get_current_session
from app.models.affirmation import (
    GenerateImageRequest,
    GenerateImageResponse,
    GenerateTextRequest,
    GenerateTextResponse,
    SynthesizeSpeechRequest,
    VoiceListResponse,
)
from app.models.user import Session, VoiceCloneResponse
from app.services.orchestrator import GenerationOrchestrator, get_orchestrator
from app.services.voice_service import clone_voice, list_voices

router = APIRouter()
logger = logging.getLogger(__name__)

# Voice samples above this are rejected before reaching the provider
MAX_VOICE_SAMPLE_SIZE = 25 * 1024 * 1024


@router.post("/text", response_model=GenerateTextResponse)
async def generate_text(
    request: GenerateTextRequest,
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Generate one affirmation for a category"""
    outcome = await orchestrator.generate_text(session, request.category)
    return outcome.result


@router.post("/image", response_model=GenerateImageResponse)
async def generate_image(
    request: GenerateImageRequest,
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Generate an image for an affirmation; reference photos come from the caller's profile"""
    outcome = await orchestrator.generate_image(session, request)
    return outcome.result


@router.post("/clone-voice", response_model=VoiceCloneResponse)
async def generate_voice_clone(
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    session: Session = Depends(get_current_session),
):
    """Create an instant voice clone from an uploaded sample"""
    contents = await read_voice_sample(file)
    cloned = await clone_voice(
        contents,
        name,
        filename=file.filename or "voice-reference.webm",
        content_type=file.content_type or "audio/webm",
    )
    return VoiceCloneResponse(voice_id=cloned.voice_id, voice_name=cloned.voice_name)


@router.post("/speech")
async def generate_speech(
    request: SynthesizeSpeechRequest,
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Speak arbitrary text in a preset voice or the caller's own clone and return the MP3"""
    outcome = await orchestrator.synthesize(session, request.text, request.voice_id)
    speech = outcome.result
    headers = {
        "Cache-Control": "no-store",
        "X-Voice-Id": speech.voice_id,
        "X-Credits-Charged": str(speech.credits_charged),
    }
    if outcome.delta.credits is not None:
        headers["X-Credits-Remaining"] = str(outcome.delta.credits)
    return Response(content=speech.audio, media_type="audio/mpeg", headers=headers)


@router.get("/voices", response_model=VoiceListResponse)
async def get_voices():
    return VoiceListResponse(voices=list_voices())


async def read_voice_sample(file: UploadFile) -> bytes:
    # MediaRecorder uploads from some browsers arrive as video/webm
    if file.content_type and not file.content_type.startswith(("audio/", "video/webm")):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid file type. Please upload an audio file."
        )

    contents = await file.read()
    if len(contents) > MAX_VOICE_SAMPLE_SIZE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File too large. Maximum size is 25MB."
        )
    return contents
