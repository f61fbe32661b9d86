# app/core/errors.py
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)

PURCHASE_REDIRECT = "/account?purchase=credits"
VOICE_SETUP_REDIRECT = "/account?setup=voice"


class AppError(Exception):
    """Base class for errors surfaced to API clients.

    ``message`` is the short human-readable text shown to the user and
    ``detail`` an optional machine string for support and debugging.
    """

    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, detail: Optional[Any] = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class ConfigurationError(AppError):
    """A provider key or model identifier is missing. Never retried."""

    code = "configuration_error"
    default_message = "This feature is temporarily unavailable."

    def to_dict(self) -> Dict[str, Any]:
        # The operator-facing text goes to the logs only
        return {"error": self.default_message, "code": self.code}


class InsufficientCredits(AppError):
    code = "insufficient_credits"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, required: int, available: int, message: Optional[str] = None):
        self.required = required
        self.available = available
        super().__init__(
            message or f"You need {required} aiams for this. You currently have {available} aiams."
        )

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body.update({
            "required": self.required,
            "available": self.available,
            "redirect": PURCHASE_REDIRECT,
        })
        return body


class ProviderRejected(AppError):
    """The input was refused; the user has to change something first."""

    code = "provider_rejected"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "The request could not be processed."


class ProviderTransientFailure(AppError):
    """Timeouts, 5xx and network errors. The user may retry once."""

    code = "provider_unavailable"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "The generation service is unavailable right now. Please try again."


class ProviderTimeout(ProviderTransientFailure):
    code = "provider_timeout"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_message = "The generation service took too long to respond. Please try again."


class ProviderRateLimited(AppError):
    code = "provider_rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = (
        "ElevenLabs temporarily disabled free-tier synthesis due to unusual activity. "
        "Upgrade your ElevenLabs plan to continue using voice playback."
    )


class GenerationFailed(ProviderTransientFailure):
    code = "generation_failed"
    default_message = "Unable to generate an affirmation right now."


class PromptSynthesisFailed(ProviderTransientFailure):
    code = "prompt_synthesis_failed"
    default_message = "Failed to craft an image prompt from the affirmation."


class ImageGenerationFailed(ProviderTransientFailure):
    code = "image_generation_failed"
    default_message = "Image generation returned no output."


class VoiceCloneFailed(ProviderTransientFailure):
    code = "voice_clone_failed"
    default_message = "Failed to clone voice with ElevenLabs."


class SpeechSynthesisFailed(ProviderTransientFailure):
    code = "speech_synthesis_failed"
    default_message = "Unable to create audio using the selected voice."


class PersistenceFailure(AppError):
    """A storage write failed, possibly after a provider call succeeded.

    ``partial_result`` holds whatever was generated but not saved so the
    client can still show it.
    """

    code = "persistence_failure"
    default_message = "Your content was generated but could not be saved. Please retry."

    def __init__(self, message: Optional[str] = None, detail: Optional[Any] = None,
                 partial_result: Optional[Dict[str, Any]] = None):
        self.partial_result = partial_result
        super().__init__(message, detail)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.partial_result is not None:
            body["partial_result"] = self.partial_result
        return body


class AffirmationNotFound(AppError):
    code = "affirmation_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Affirmation not found."


class ImageAlreadyExists(AppError):
    code = "image_already_exists"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This affirmation already has an image."


class VoiceNotConfigured(AppError):
    code = "voice_not_configured"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Add a 30-second voice sample in account settings to enable personal playback."

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["redirect"] = VOICE_SETUP_REDIRECT
        return body


class RequestSuperseded(AppError):
    """A newer request for the same slot replaced this one."""

    code = "request_superseded"
    status_code = status.HTTP_409_CONFLICT
    default_message = "A newer request replaced this one."


class GenerationInProgress(AppError):
    code = "generation_in_progress"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This request is still being processed."


async def app_error_handler(request: Request, exc: AppError):
    if isinstance(exc, InsufficientCredits):
        logger.info(f"Insufficient credits on {request.url.path}: required={exc.required} available={exc.available}")
    elif isinstance(exc, ConfigurationError):
        logger.error(f"Configuration error on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{exc.code} on {request.url.path}: {exc.message} ({exc.detail})")

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
