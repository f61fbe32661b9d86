# app/services/openai_service.py
import asyncio
import logging
import random
import re
from typing import Dict, List, Optional, Type

import openai
from openai import AsyncOpenAI

from app.core.config import get_settings, require
from app.core.errors import (
    GenerationFailed,
    PromptSynthesisFailed,
    ProviderRejected,
    ProviderTimeout,
    ProviderTransientFailure,
)
from app.models.user import Demographics

logger = logging.getLogger(__name__)

TEXT_TIMEOUT_SECONDS = 30.0

# Share of affirmations that must open with the literal words "I am"
I_AM_PROBABILITY = 0.69

AFFIRMATION_SYSTEM_PROMPT = (
    "You are an encouraging affirmation coach. Craft vivid, emotionally resonant "
    "affirmations that sound natural, grounded, and human."
)

IMAGE_PROMPT_SYSTEM_PROMPT = (
    "You translate affirmations into evocative visual art prompts for text-to-image models. "
    "Focus on mood, lighting, and key elements that visually convey the message of the affirmation."
)

WRAPPING_QUOTES = "\"“”'‘’"
LEADING_PRONOUN = re.compile(
    r"^(?:i|you|we|they|he|she|it)(?:\s+(?:am|are|is)\b|['’](?:m|re|s)\b|\b)\s*",
    re.IGNORECASE,
)

_client: Optional[AsyncOpenAI] = None


def get_openai_client() -> AsyncOpenAI:
    """Create the OpenAI client on first use; fails fast without an API key"""
    global _client
    if _client is None:
        api_key = require(get_settings().openai_api_key, "OPENAI_API_KEY")
        _client = AsyncOpenAI(api_key=api_key, max_retries=0)
    return _client


def strip_wrapping_quotes(text: str) -> str:
    return text.strip().strip(WRAPPING_QUOTES).strip()


def enforce_i_am_opening(text: str) -> str:
    """Rewrite an affirmation so it begins with "I am".

    A leading pronoun (and the verb glued to it, e.g. "You are") is dropped
    before the new opening is added.
    """
    if text.lower().startswith("i am"):
        return re.sub(r"\s+", " ", text).strip()

    remainder = LEADING_PRONOUN.sub("", text.strip(), count=1)
    return re.sub(r"\s+", " ", f"I am {remainder}").strip()


def build_affirmation_requirements(category: str, must_start_with_i_am: bool) -> str:
    return "\n".join([
        f'Create one powerful affirmation for the category "{category}".',
        "Requirements:",
        '• Begin the sentence with the exact words "I am".'
        if must_start_with_i_am
        else '• Use a natural first-person opening such as "I", "I am", "I choose", or "My".',
        "• Present tense and realistic yet aspirational.",
        "• 20-32 words.",
        "• Include a specific, vivid detail, sensation, or action tied to the category so that it feels distinct from common phrases.",
        "• Avoid repeating familiar phrasing or generic affirmations you may have produced earlier; use fresh adjectives and imagery.",
        "• Return only the affirmation text with no quotation marks.",
    ])


def build_image_prompt_request(
    affirmation: str,
    category: Optional[str],
    reference_images: Optional[List[str]] = None,
    demographics: Optional[Demographics] = None,
) -> str:
    """User message for the scene-description stage.

    Likeness context comes from the two reference photos when both are
    given, otherwise from the demographic traits. Never both.
    """
    lines = [
        "Affirmation:",
        affirmation,
        f"Category: {category}" if category else "",
        "Create a concise image prompt (max 70 words) describing a single scene that captures the essence of the affirmation.",
        "Specify mood, lighting, environment, and any symbolic elements that convey the message of the affirmation. "
        "Use descriptive adjectives. Do not mention text or typography.",
    ]

    if reference_images and len(reference_images) >= 2:
        portrait, full_body = reference_images[0], reference_images[1]
        lines.append(
            "Use the following user reference photos to capture their exact likeness:\n"
            f"Portrait reference: {portrait}\n"
            f"Full-body reference: {full_body}. "
            "Describe the subject with identical facial features, skin tone, hair color, hairstyle, hair texture, "
            "body proportions, and posture. Preserve all distinctive physical characteristics."
        )
    elif demographics is not None:
        traits = []
        if demographics.gender:
            traits.append(f"gender: {demographics.gender}")
        if demographics.age_range:
            traits.append(f"age: {demographics.age_range}")
        if demographics.ethnicity:
            traits.append(f"ethnicity: {demographics.ethnicity}")
        if demographics.nationality:
            traits.append(f"nationality: {demographics.nationality}")
        if traits:
            lines.append(
                "If you depict a person, align their appearance with these user preferences: "
                f"{', '.join(traits)}."
            )

    return "\n".join(line for line in lines if line)


async def _chat_completion(
    model: str,
    messages: List[Dict[str, str]],
    temperature: float,
    max_tokens: int,
    failure: Type[ProviderTransientFailure],
) -> str:
    """Run one chat completion and normalise provider errors"""
    client = get_openai_client()

    try:
        completion = await asyncio.wait_for(
            client.chat.completions.create(
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                messages=messages,
            ),
            timeout=TEXT_TIMEOUT_SECONDS,
        )
    except (asyncio.TimeoutError, openai.APITimeoutError) as e:
        logger.warning(f"OpenAI request timed out after {TEXT_TIMEOUT_SECONDS}s")
        raise ProviderTimeout(detail=str(e) or "timeout")
    except openai.RateLimitError as e:
        logger.warning(f"OpenAI rate limited: {e}")
        raise ProviderTransientFailure(detail=str(e))
    except openai.APIConnectionError as e:
        logger.warning(f"OpenAI connection error: {e}")
        raise ProviderTransientFailure(detail=str(e))
    except openai.APIStatusError as e:
        logger.error(f"OpenAI API error: {e.status_code} - {e.message}")
        if e.status_code >= 500:
            raise ProviderTransientFailure(detail=e.message)
        raise ProviderRejected(detail=e.message)

    if not completion.choices:
        raise failure(detail="empty choices")
    return (completion.choices[0].message.content or "").strip()


async def generate_affirmation(category: str, rng: Optional[random.Random] = None) -> str:
    """Generate one first-person affirmation for a category"""
    if not category or not category.strip():
        raise ProviderRejected("Category is required to generate an affirmation.")

    settings = get_settings()
    must_start_with_i_am = (rng or random).random() < I_AM_PROBABILITY

    content = await _chat_completion(
        model=settings.affirmation_model,
        messages=[
            {"role": "system", "content": AFFIRMATION_SYSTEM_PROMPT},
            {"role": "user", "content": build_affirmation_requirements(category, must_start_with_i_am)},
        ],
        temperature=0.9,
        max_tokens=160,
        failure=GenerationFailed,
    )

    affirmation = strip_wrapping_quotes(content)
    if not affirmation:
        raise GenerationFailed("Affirmation generation returned no content.")

    if must_start_with_i_am:
        affirmation = enforce_i_am_opening(affirmation)

    logger.info(f"Generated affirmation for '{category}' ({len(affirmation.split())} words)")
    return affirmation


async def synthesize_image_prompt(
    affirmation: str,
    category: Optional[str] = None,
    reference_images: Optional[List[str]] = None,
    demographics: Optional[Demographics] = None,
) -> str:
    """Turn an affirmation into a short visual scene description"""
    settings = get_settings()

    content = await _chat_completion(
        model=settings.image_prompt_model,
        messages=[
            {"role": "system", "content": IMAGE_PROMPT_SYSTEM_PROMPT},
            {"role": "user", "content": build_image_prompt_request(affirmation, category, reference_images, demographics)},
        ],
        temperature=0.8,
        max_tokens=200,
        failure=PromptSynthesisFailed,
    )

    if not content:
        raise PromptSynthesisFailed()
    return content
