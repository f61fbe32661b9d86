# app/services/image_processor.py
from PIL import Image, ImageOps, UnidentifiedImageError
import io
import logging

from app.core.errors import ProviderRejected

logger = logging.getLogger(__name__)

# Reference photos are only used as likeness input, so keep them modest
MAX_DIMENSION = 1536
MIN_DIMENSION = 256
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
# JPEG quality for optimization
JPEG_QUALITY = 85


def validate_image_file(file_bytes: bytes) -> bool:
    """Validate if the file is a valid image"""
    try:
        with Image.open(io.BytesIO(file_bytes)) as image:
            image.verify()
        return True
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return False


def optimize_reference_photo(image_bytes: bytes) -> bytes:
    """
    Normalise an uploaded reference photo to an upright RGB JPEG
    no larger than MAX_DIMENSION on its long side
    """
    if len(image_bytes) > MAX_UPLOAD_BYTES:
        raise ProviderRejected("Photos must be 10 MB or smaller.", detail=f"{len(image_bytes)} bytes")

    if not validate_image_file(image_bytes):
        raise ProviderRejected("Please upload a JPEG, PNG or WebP photo.")

    image = Image.open(io.BytesIO(image_bytes))
    # Phones store rotation in EXIF
    image = ImageOps.exif_transpose(image)

    # Convert RGBA to RGB if necessary
    if image.mode in ('RGBA', 'LA', 'P'):
        # Create a white background
        background = Image.new('RGB', image.size, (255, 255, 255))
        if image.mode == 'P':
            image = image.convert('RGBA')
        background.paste(image, mask=image.split()[-1])
        image = background
    elif image.mode != 'RGB':
        image = image.convert('RGB')

    width, height = image.size
    if min(width, height) < MIN_DIMENSION:
        raise ProviderRejected(
            f"Photos must be at least {MIN_DIMENSION} pixels on each side.",
            detail=f"{width}x{height}",
        )

    if max(width, height) > MAX_DIMENSION:
        scale = MAX_DIMENSION / max(width, height)
        new_size = (int(width * scale), int(height * scale))
        image = image.resize(new_size, Image.Resampling.LANCZOS)
        logger.info(f"Resized reference photo from {width}x{height} to {new_size[0]}x{new_size[1]}")

    output_buffer = io.BytesIO()
    image.save(output_buffer, format='JPEG', quality=JPEG_QUALITY, optimize=True)
    return output_buffer.getvalue()
