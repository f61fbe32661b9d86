# app/services/image_service.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import replicate
from replicate.exceptions import ModelError, ReplicateError

from app.core.config import get_settings, require
from app.core.errors import (
    ConfigurationError,
    ImageGenerationFailed,
    ProviderRejected,
    ProviderTimeout,
    ProviderTransientFailure,
)
from app.models.user import ASPECT_RATIOS, Demographics
from app.services.openai_service import synthesize_image_prompt

logger = logging.getLogger(__name__)

IMAGE_TIMEOUT_SECONDS = 60.0
OUTPUT_FORMAT = "jpg"

_client: Optional[replicate.Client] = None


@dataclass(frozen=True)
class ImageResult:
    url: str
    prompt: str
    model: str


def get_replicate_client() -> replicate.Client:
    global _client
    if _client is None:
        token = require(get_settings().replicate_api_token, "REPLICATE_API_TOKEN")
        _client = replicate.Client(api_token=token)
    return _client


def _split_owner_name(model_name: str) -> str:
    owner, _, name = model_name.partition("/")
    if not owner or not name or "/" in name:
        raise ConfigurationError(f'Model identifier "{model_name}" must be in the format "owner/name".')
    return f"{owner}/{name}"


async def resolve_model_specifier(
    base_model: str,
    configured_version: Optional[str],
    lookup_latest_version: Callable[[str], Awaitable[str]],
) -> str:
    """Work out the ``owner/name:version`` to run.

    The configured value may be a full versioned spec, an ``owner/name``
    pair or a bare version id for the base model. Without a configured
    value the base model's latest version is looked up.
    """
    async def with_latest_version(model_name: str) -> str:
        model_name = _split_owner_name(model_name)
        version_id = await lookup_latest_version(model_name)
        if not version_id:
            raise ConfigurationError(f'Unable to resolve a version for the model "{model_name}".')
        return f"{model_name}:{version_id}"

    if not configured_version:
        return await with_latest_version(base_model)

    if ":" in configured_version:
        model_part, _, version = configured_version.partition(":")
        if "/" not in model_part or not version:
            raise ConfigurationError(f'Configured model "{configured_version}" must include an owner and name.')
        return configured_version

    if "/" in configured_version:
        return await with_latest_version(configured_version)

    return f"{_split_owner_name(base_model)}:{configured_version}"


def normalize_image_output(output: Any) -> Optional[str]:
    """Reduce the provider's output to a single URL.

    Models answer with a bare string, a list of strings or file objects,
    a mapping with a ``url`` key or an object exposing ``url``.
    """
    if output is None:
        return None

    if isinstance(output, str):
        return output.strip() or None

    if isinstance(output, (list, tuple)):
        for item in output:
            url = normalize_image_output(item)
            if url:
                return url
        return None

    if isinstance(output, dict):
        return normalize_image_output(output.get("url"))

    url = getattr(output, "url", None)
    if callable(url):
        url = url()
    if url is not None:
        return normalize_image_output(str(url))

    return None


class ImageGenerator:
    """Two-stage image generation: scene description, then synthesis"""

    def __init__(self, client: Optional[replicate.Client] = None):
        self._client = client

    @property
    def client(self) -> replicate.Client:
        return self._client or get_replicate_client()

    async def _latest_version(self, model_name: str) -> str:
        try:
            model = await asyncio.to_thread(self.client.models.get, model_name)
        except ReplicateError as e:
            logger.error(f"Replicate model lookup failed for {model_name}: {e}")
            raise ConfigurationError(f'Unable to resolve a version for the model "{model_name}".')
        latest = getattr(model, "latest_version", None)
        return getattr(latest, "id", None)

    async def _run(self, model_spec: str, model_input: dict) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.client.run, model_spec, input=model_input),
                timeout=IMAGE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Image synthesis timed out after {IMAGE_TIMEOUT_SECONDS}s")
            raise ProviderTimeout()
        except ModelError as e:
            logger.error(f"Image model failed: {e}")
            raise ImageGenerationFailed(detail=str(e))
        except ReplicateError as e:
            status = getattr(e, "status", None) or 0
            logger.error(f"Replicate API error: {status} - {e}")
            if 400 <= status < 500 and status != 429:
                raise ProviderRejected("The image request was rejected.", detail=str(e))
            raise ProviderTransientFailure(detail=str(e))

    async def generate(
        self,
        affirmation: str,
        category: Optional[str] = None,
        aspect_ratio: str = "1:1",
        reference_images: Optional[List[str]] = None,
        demographics: Optional[Demographics] = None,
    ) -> ImageResult:
        if not affirmation or not affirmation.strip():
            raise ProviderRejected("Affirmation text is required.")
        if aspect_ratio not in ASPECT_RATIOS:
            raise ProviderRejected(f"Unsupported aspect ratio: {aspect_ratio}")

        settings = get_settings()
        # Fail before spending a completion call when the image backend is not configured
        if self._client is None:
            require(settings.replicate_api_token, "REPLICATE_API_TOKEN")

        references = [url for url in (reference_images or []) if url][:2]

        prompt = await synthesize_image_prompt(
            affirmation,
            category,
            reference_images=references if len(references) == 2 else None,
            demographics=None if references else demographics,
        )

        model_spec = await resolve_model_specifier(
            settings.replicate_image_model,
            settings.replicate_image_version,
            self._latest_version,
        )

        model_input = {
            "prompt": prompt,
            "output_format": OUTPUT_FORMAT,
            "aspect_ratio": aspect_ratio,
        }
        if references:
            model_input["image_input"] = references
            logger.info(f"Including {len(references)} reference images")

        logger.info(f"Generating image with {model_spec} ({aspect_ratio})")
        output = await self._run(model_spec, model_input)

        url = normalize_image_output(output)
        if not url:
            raise ImageGenerationFailed()

        return ImageResult(url=url, prompt=prompt, model=model_spec)


image_generator = ImageGenerator()
