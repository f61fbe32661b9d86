# app/core/config.py
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Needed before the server can accept traffic
STARTUP_REQUIRED_VARS = ["SUPABASE_URL"]
SUPABASE_KEY_VARS = ["SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_ANON_KEY"]

# Needed by the generation providers, checked on first use
PROVIDER_VARS = ["OPENAI_API_KEY", "REPLICATE_API_TOKEN", "ELEVENLABS_API_KEY"]


@dataclass(frozen=True)
class Settings:
    supabase_url: Optional[str]
    supabase_key: Optional[str]
    affirmations_bucket: str
    openai_api_key: Optional[str]
    affirmation_model: str
    image_prompt_model: str
    replicate_api_token: Optional[str]
    replicate_image_model: str
    replicate_image_version: Optional[str]
    elevenlabs_api_key: Optional[str]
    elevenlabs_model_id: str
    environment: str
    cors_origins: List[str]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read settings from the environment once per process"""
    affirmation_model = os.getenv("OPENAI_AFFIRMATION_MODEL") or "gpt-4o-mini"
    origins = os.getenv("CORS_ORIGINS", "*")

    return Settings(
        supabase_url=os.getenv("SUPABASE_URL"),
        supabase_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY"),
        affirmations_bucket=os.getenv("SUPABASE_BUCKET_AFFIRMATIONS", "affirmation-assets"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        affirmation_model=affirmation_model,
        image_prompt_model=os.getenv("OPENAI_IMAGE_PROMPT_MODEL") or affirmation_model,
        replicate_api_token=os.getenv("REPLICATE_API_TOKEN"),
        replicate_image_model=os.getenv("REPLICATE_IMAGE_MODEL") or "google/nano-banana",
        replicate_image_version=os.getenv("REPLICATE_IMAGE_VERSION") or None,
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY"),
        elevenlabs_model_id=os.getenv("ELEVENLABS_MODEL_ID") or "eleven_multilingual_v2",
        environment=os.getenv("ENVIRONMENT", "production"),
        cors_origins=[origin.strip() for origin in origins.split(",") if origin.strip()],
    )


def require(value: Optional[str], name: str) -> str:
    """Return a configured value or fail fast with a ConfigurationError"""
    if not value:
        logger.error(f"{name} is not configured")
        raise ConfigurationError(f"{name} is not configured.")
    return value


def missing_startup_vars() -> List[str]:
    """Environment variables the server cannot start without"""
    missing = [var for var in STARTUP_REQUIRED_VARS if not os.getenv(var)]
    if not any(os.getenv(var) for var in SUPABASE_KEY_VARS):
        missing.append(" or ".join(SUPABASE_KEY_VARS))
    return missing


def missing_provider_vars() -> List[str]:
    return [var for var in PROVIDER_VARS if not os.getenv(var)]
