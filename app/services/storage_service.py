# app/services/storage_service.py
import aiohttp
import logging
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from app.core.async_supabase import async_supabase_client, extract_error
from app.core.config import get_settings
from app.core.errors import PersistenceFailure

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 10

# Pillow format name -> (extension, content type)
IMAGE_FORMATS = {
    "JPEG": ("jpg", "image/jpeg"),
    "PNG": ("png", "image/png"),
    "WEBP": ("webp", "image/webp"),
    "GIF": ("gif", "image/gif"),
}


@dataclass(frozen=True)
class RehostResult:
    url: str
    rehosted: bool


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def image_path(user_id: str, affirmation_id: str, extension: str = "jpg") -> str:
    # A new object per generation event; nothing is deduplicated
    return f"users/{user_id}/affirmations/{affirmation_id}/images/generated-{_epoch_ms()}.{extension}"


def audio_path(user_id: str, affirmation_id: str, voice_id: str) -> str:
    return f"users/{user_id}/affirmations/{affirmation_id}/audio/{voice_id}.mp3"


def reference_photo_path(user_id: str, kind: str) -> str:
    return f"users/{user_id}/reference/{kind}-{_epoch_ms()}.jpg"


def detect_image_format(data: bytes) -> Tuple[str, str]:
    """Return (extension, content type) for image bytes, defaulting to JPEG"""
    try:
        with Image.open(BytesIO(data)) as img:
            return IMAGE_FORMATS.get(img.format or "", IMAGE_FORMATS["JPEG"])
    except (UnidentifiedImageError, OSError):
        return IMAGE_FORMATS["JPEG"]


async def download_asset(url: str) -> Tuple[bytes, Optional[str]]:
    """Fetch a provider-hosted asset; raises on any non-200 answer"""
    timeout = aiohttp.ClientTimeout(total=DOWNLOAD_TIMEOUT_SECONDS)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(url) as response:
            if response.status != 200:
                raise aiohttp.ClientResponseError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=f"Failed to download asset: HTTP {response.status}",
                )
            return await response.read(), response.headers.get("Content-Type")


async def store_bytes(data: bytes, destination_path: str, content_type: str, db=None) -> str:
    """Upload bytes to the affirmation bucket and return the public URL"""
    db = db or async_supabase_client
    bucket = get_settings().affirmations_bucket

    try:
        upload_response = await db.storage_upload(
            bucket,
            destination_path,
            data,
            {
                "content-type": content_type,
                "cache-control": "public, max-age=31536000",
                "upsert": "true",  # Must be string, not boolean
            },
        )
        upload_error = extract_error(upload_response)
        if upload_error:
            raise RuntimeError(str(upload_error))

        public_url = await db.storage_public_url(bucket, destination_path)
    except Exception as e:
        logger.error(f"Error uploading {destination_path} to storage: {str(e)}")
        raise PersistenceFailure("Unable to store the file.", detail=str(e))

    if not public_url:
        raise PersistenceFailure("Unable to store the file.", detail=f"no public URL for {destination_path}")

    logger.info(f"Stored {len(data)} bytes at {destination_path}")
    return public_url


async def rehost(source_url: str, destination_path: str, content_type: Optional[str] = None, db=None) -> RehostResult:
    """Copy a provider-hosted asset into our storage.

    An ``{ext}`` placeholder in ``destination_path`` is filled with the
    extension detected from the downloaded bytes.

    Best effort: when the download or upload fails the provider URL is
    returned unchanged, so the user still sees the asset even if that link
    expires later.
    """
    try:
        data, _ = await download_asset(source_url)
        extension, detected_type = detect_image_format(data)
        destination_path = destination_path.replace("{ext}", extension)
        stable_url = await store_bytes(data, destination_path, content_type or detected_type, db=db)
        return RehostResult(url=stable_url, rehosted=True)
    except Exception as e:
        logger.warning(f"Rehost of {source_url} failed, using original URL: {str(e)}")
        return RehostResult(url=source_url, rehosted=False)


async def rehost_image(source_url: str, user_id: str, affirmation_id: str, db=None) -> RehostResult:
    """Rehost a generated image under the affirmation's image folder"""
    return await rehost(source_url, image_path(user_id, affirmation_id, "{ext}"), db=db)
