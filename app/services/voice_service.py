# app/services/voice_service.py
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import get_settings, require
from app.core.errors import (
    ProviderRateLimited,
    ProviderRejected,
    ProviderTimeout,
    ProviderTransientFailure,
    SpeechSynthesisFailed,
    VoiceCloneFailed,
)
from app.core.supabase_client import get_http_client

logger = logging.getLogger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"

CLONE_TIMEOUT_SECONDS = 60.0
SYNTHESIS_TIMEOUT_SECONDS = 30.0

# Roughly 30 seconds of compressed speech
MIN_VOICE_SAMPLE_BYTES = 30_000
DEFAULT_CLONE_NAME = "AiAm Voice Clone"
UNUSUAL_ACTIVITY_STATUS = "detected_unusual_activity"

# Preset voices offered to everyone; served without a provider round-trip
ALLOWED_VOICES: List[Dict[str, str]] = [
    {"voice_id": "EXAVITQu4vr4xnSDxMaL", "name": "Sarah", "description": "Young warm & confident adult female"},
    {"voice_id": "pFZP5JQG7iQjIQuC4Bku", "name": "Lily", "description": "Velvety British female voice"},
    {"voice_id": "SAz9YHcvj6GT2YYXdXww", "name": "River", "description": "Relaxed neutral voice"},
    {"voice_id": "cgSgspJ2msm6clMCkdW9", "name": "Jessica", "description": "Young, playful American female voice"},
    {"voice_id": "IKne3meq5aSn9XLyUdCD", "name": "Charlie", "description": "Young confident, energetic Australian male voice"},
    {"voice_id": "JBFqnCBsd6RMkjVDRZzb", "name": "George", "description": "Warm, resonant, captivating voice"},
    {"voice_id": "N2lVS1w4EtoT3dr4eOWO", "name": "Callum", "description": "Gravelly and unsettling voice"},
    {"voice_id": "iP95p4xoKVk53GoZ742B", "name": "Chris", "description": "Down-to-earth male voice"},
    {"voice_id": "nPczCjzI2devNBz1zQrb", "name": "Brian", "description": "Middle-aged resonant comforting tone"},
    {"voice_id": "onwK4e9ZLuTAKqWW03F9", "name": "Daniel", "description": "Strong professional voice"},
]
DEFAULT_VOICE_ID = ALLOWED_VOICES[0]["voice_id"]
_PRESET_IDS = {voice["voice_id"] for voice in ALLOWED_VOICES}


@dataclass(frozen=True)
class ClonedVoice:
    voice_id: str
    voice_name: str


def list_voices() -> List[Dict[str, str]]:
    return [dict(voice) for voice in ALLOWED_VOICES]


def is_preset_voice(voice_id: str) -> bool:
    return voice_id in _PRESET_IDS


def _api_key() -> str:
    return require(get_settings().elevenlabs_api_key, "ELEVENLABS_API_KEY")


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _is_unusual_activity(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    detail = body.get("detail")
    # Our own error responses nest the provider body one level deeper
    if isinstance(detail, dict) and isinstance(detail.get("detail"), dict):
        detail = detail["detail"]
    return isinstance(detail, dict) and detail.get("status") == UNUSUAL_ACTIVITY_STATUS


async def clone_voice(audio: bytes, name: Optional[str] = None, filename: str = "voice-reference.webm",
                      content_type: str = "audio/webm") -> ClonedVoice:
    """Create an instant voice clone from a recorded sample"""
    api_key = _api_key()

    if len(audio) < MIN_VOICE_SAMPLE_BYTES:
        raise ProviderRejected(
            "Please upload at least 30 seconds of clear speech.",
            detail=f"sample is {len(audio)} bytes, minimum {MIN_VOICE_SAMPLE_BYTES}",
        )

    voice_name = (name or "").strip() or DEFAULT_CLONE_NAME
    client = get_http_client()

    try:
        response = await client.post(
            f"{ELEVENLABS_BASE_URL}/voices/add",
            headers={"xi-api-key": api_key},
            data={"name": voice_name},
            files={"files": (filename, audio, content_type)},
            timeout=CLONE_TIMEOUT_SECONDS,
        )
    except httpx.TimeoutException as e:
        logger.warning(f"Voice cloning timed out after {CLONE_TIMEOUT_SECONDS}s")
        raise ProviderTimeout(detail=str(e) or "timeout")
    except httpx.HTTPError as e:
        logger.warning(f"Voice cloning request failed: {e}")
        raise ProviderTransientFailure(detail=str(e))

    if response.status_code >= 400:
        detail = _error_body(response)
        logger.error(f"ElevenLabs clone error: {response.status_code} - {detail}")
        if response.status_code in (400, 422):
            raise ProviderRejected("Your voice sample was rejected. Try a longer, clearer recording.", detail=detail)
        raise VoiceCloneFailed(detail=detail)

    data = response.json()
    voice_id = data.get("voice_id") or data.get("voiceId")
    if not voice_id:
        raise VoiceCloneFailed(detail="response did not include a voice id")

    logger.info(f"Created voice clone {voice_id}")
    return ClonedVoice(voice_id=voice_id, voice_name=data.get("name") or voice_name)


async def synthesize_speech(text: str, voice_id: str) -> bytes:
    """Speak ``text`` in ``voice_id`` and return MP3 bytes"""
    api_key = _api_key()

    if not text or not text.strip():
        raise ProviderRejected("There is no text to speak.")
    if not voice_id:
        raise ProviderRejected("Please choose a voice to play the affirmation.")

    client = get_http_client()

    try:
        response = await client.post(
            f"{ELEVENLABS_BASE_URL}/text-to-speech/{voice_id}",
            headers={
                "Accept": "audio/mpeg",
                "Content-Type": "application/json",
                "xi-api-key": api_key,
            },
            json={
                "text": text,
                "model_id": get_settings().elevenlabs_model_id,
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
            },
            timeout=SYNTHESIS_TIMEOUT_SECONDS,
        )
    except httpx.TimeoutException as e:
        logger.warning(f"Speech synthesis timed out after {SYNTHESIS_TIMEOUT_SECONDS}s")
        raise ProviderTimeout(detail=str(e) or "timeout")
    except httpx.HTTPError as e:
        logger.warning(f"Speech synthesis request failed: {e}")
        raise ProviderTransientFailure(detail=str(e))

    if response.status_code >= 400:
        body = _error_body(response)
        if _is_unusual_activity(body):
            logger.warning(f"ElevenLabs flagged unusual activity for voice {voice_id}")
            raise ProviderRateLimited(detail={"status": UNUSUAL_ACTIVITY_STATUS, "provider": body})
        logger.error(f"ElevenLabs synthesis error: {response.status_code} - {body}")
        raise SpeechSynthesisFailed(detail=body)

    if not response.content:
        raise SpeechSynthesisFailed(detail="empty audio")

    return response.content
