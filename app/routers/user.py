# app/routers/user.py
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from typing import Any, Dict, Literal, Optional
import logging

from app.core.auth import get_current_session, update_profile
from app.models.user import CreditSummary, ProfileUpdate, UserCreditsUpdate, UserProfile, VoiceCloneResponse
from app.routers.generation import read_voice_sample
from app.services.credit_service import credit_summary
from app.services.image_processor import optimize_reference_photo
from app.services.ledger_service import credit_ledger
from app.models.user import Session
from app.services.storage_service import reference_photo_path, store_bytes
from app.services.voice_service import clone_voice

router = APIRouter()
logger = logging.getLogger(__name__)

# Reference photo kind -> profile column
REFERENCE_PHOTO_FIELDS = {
    "portrait": "portrait_image_url",
    "full-body": "full_body_image_url",
}


@router.get("/profile", response_model=UserProfile)
async def get_user_profile(session: Session = Depends(get_current_session)):
    """Get current user profile"""
    return session.profile


@router.put("/profile", response_model=UserProfile)
async def update_user_profile(
    profile_update: ProfileUpdate,
    session: Session = Depends(get_current_session),
):
    """Update user profile"""
    changes = profile_update.model_dump(exclude_unset=True)

    update_data: Dict[str, Any] = {}
    demographics = changes.pop("demographics", None)
    if demographics is not None:
        # Stored as flat columns
        update_data.update(demographics)
    update_data.update(changes)

    if not update_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No valid fields to update"
        )

    logger.info(f"Updating profile fields {sorted(update_data)} for {session.user_id}")
    return await update_profile(session.user_id, update_data)


@router.post("/reference-photo/{kind}", response_model=UserProfile)
async def upload_reference_photo(
    kind: Literal["portrait", "full-body"],
    photo: UploadFile = File(...),
    session: Session = Depends(get_current_session),
):
    """Store a portrait or full-body photo used for personal images"""
    if photo.content_type and not photo.content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid file type. Please upload an image file."
        )

    optimized = optimize_reference_photo(await photo.read())
    url = await store_bytes(optimized, reference_photo_path(session.user_id, kind), "image/jpeg")
    logger.info(f"Stored {kind} reference photo for {session.user_id}")
    return await update_profile(session.user_id, {REFERENCE_PHOTO_FIELDS[kind]: url})


@router.post("/voice-clone", response_model=VoiceCloneResponse)
async def create_voice_clone(
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    session: Session = Depends(get_current_session),
):
    """Clone the user's voice and remember it on the profile"""
    contents = await read_voice_sample(file)
    cloned = await clone_voice(
        contents,
        name,
        filename=file.filename or "voice-reference.webm",
        content_type=file.content_type or "audio/webm",
    )
    await update_profile(session.user_id, {
        "voice_clone_id": cloned.voice_id,
        "voice_clone_name": cloned.voice_name,
    })
    return VoiceCloneResponse(voice_id=cloned.voice_id, voice_name=cloned.voice_name)


@router.get("/credits", response_model=CreditSummary)
async def get_user_credits(session: Session = Depends(get_current_session)):
    """Get user's current credit balance"""
    balance = await credit_ledger.get_balance(session.user_id)
    return CreditSummary(**credit_summary(balance))


@router.put("/credits")
async def update_user_credits(
    credits_update: UserCreditsUpdate,
    session: Session = Depends(get_current_session),
):
    """Credits only change through generation and purchases, never directly"""
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not authorized to update credits"
    )
