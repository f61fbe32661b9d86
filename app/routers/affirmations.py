# app/routers/affirmations.py
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from typing import List, Optional
import logging

from app.core.auth import get_current_session
from app.models.affirmation import (
    AddImageRequest,
    AddImageResponse,
    Affirmation,
    AffirmationListResponse,
    CategoryInfo,
    CreateAffirmationRequest,
    CreateAffirmationResponse,
    FavoriteUpdate,
    GenerationStatus,
    PlaylistResponse,
    SpeakRequest,
)
from app.models.user import Session
from app.services.orchestrator import GenerationOrchestrator, get_orchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/", response_model=CreateAffirmationResponse, status_code=status.HTTP_201_CREATED)
async def create_affirmation(
    request: CreateAffirmationRequest,
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Generate and save a new affirmation, charging credits"""
    logger.info(f"New affirmation for user {session.user_id} in '{request.category_id}'")
    outcome = await orchestrator.create_affirmation(session, request)
    return outcome.result


@router.get("/", response_model=AffirmationListResponse)
async def list_affirmations(
    favorites_only: bool = Query(False),
    category_id: Optional[str] = Query(None),
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """The user's library, newest first"""
    affirmations = await orchestrator.store.list_for_user(
        session.user_id,
        favorites_only=favorites_only,
        category_id=category_id,
    )
    categories = await orchestrator.store.categories_for_user(session.user_id)
    return AffirmationListResponse(affirmations=affirmations, categories=categories)


@router.get("/categories", response_model=List[CategoryInfo])
async def list_categories(
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.store.categories_for_user(session.user_id)


@router.get("/playlist", response_model=PlaylistResponse)
async def get_playlist(
    voice_id: Optional[str] = Query(None),
    use_my_voice: bool = Query(False),
    favorites_only: bool = Query(False),
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Cached audio per affirmation for one voice, in library order"""
    outcome = await orchestrator.playlist(session, voice_id, use_my_voice, favorites_only)
    return outcome.result


@router.get("/generations/{request_id}", response_model=GenerationStatus)
async def get_generation_status(
    request_id: str,
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Poll the state of a creation request"""
    progress = await orchestrator.tracker.get_progress(session.user_id, request_id)
    if not progress:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Generation not found"
        )
    return GenerationStatus(**progress)


@router.get("/{affirmation_id}", response_model=Affirmation)
async def get_affirmation(
    affirmation_id: str,
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.store.get(session.user_id, affirmation_id)


@router.post("/{affirmation_id}/image", response_model=AddImageResponse)
async def add_image(
    affirmation_id: str,
    request: AddImageRequest,
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Generate an image for an affirmation that has none"""
    outcome = await orchestrator.add_image(session, affirmation_id, request.use_personal_image)
    return outcome.result


@router.post("/{affirmation_id}/speak")
async def speak_affirmation(
    affirmation_id: str,
    request: SpeakRequest,
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Play an affirmation in a voice.

    A cached recording comes back as JSON with its URL; fresh audio comes
    back as the MP3 itself.
    """
    outcome = await orchestrator.speak(session, affirmation_id, request.voice_id, request.use_my_voice)
    speech = outcome.result

    if speech.cached:
        return {"affirmation_id": speech.affirmation_id, "voice_id": speech.voice_id,
                "audio_url": speech.audio_url, "cached": True}

    headers = {
        "Cache-Control": "no-store",
        "X-Voice-Id": speech.voice_id,
        "X-Credits-Charged": str(speech.credits_charged),
    }
    if outcome.delta.credits is not None:
        headers["X-Credits-Remaining"] = str(outcome.delta.credits)
    return Response(content=speech.audio, media_type="audio/mpeg", headers=headers)


@router.put("/{affirmation_id}/favorite", response_model=Affirmation)
async def set_favorite(
    affirmation_id: str,
    update: FavoriteUpdate,
    session: Session = Depends(get_current_session),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.toggle_favorite(session, affirmation_id, update.favorite)
    return outcome.result
