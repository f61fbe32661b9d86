# app/services/credit_service.py
"""
Credit pricing for affirmation generation.

Every feature is available to everyone; personal assets are add-ons:
the base cost (20) covers the affirmation text and one generic image,
personal reference images add 10 and cloned-voice playback adds 20.
"""
from dataclasses import dataclass
from typing import Dict

from app.models.user import UserProfile

BASE_AFFIRMATION_COST = 20
PERSONAL_IMAGE_COST = 10
VOICE_CLONE_COST = 20


@dataclass(frozen=True)
class CreditSelection:
    use_personal_image: bool = False
    use_voice_clone: bool = False


@dataclass(frozen=True)
class CreditCalculation:
    base: int
    personal_image: int
    voice_clone: int
    total: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "base": self.base,
            "personal_image": self.personal_image,
            "voice_clone": self.voice_clone,
            "total": self.total,
        }


def calculate_credit_cost(use_personal_image: bool = False, use_voice_clone: bool = False) -> CreditCalculation:
    """Calculate the credit cost of one affirmation generation.

    Callers pass the *effective* selection (see ``effective_selection``),
    i.e. a toggle is only true when the user actually has the asset on file.
    """
    base = BASE_AFFIRMATION_COST
    personal_image = PERSONAL_IMAGE_COST if use_personal_image else 0
    voice_clone = VOICE_CLONE_COST if use_voice_clone else 0

    return CreditCalculation(
        base=base,
        personal_image=personal_image,
        voice_clone=voice_clone,
        total=base + personal_image + voice_clone,
    )


def effective_selection(profile: UserProfile, use_personal_image: bool, use_voice_clone: bool) -> CreditSelection:
    """Drop toggles the profile cannot honour (missing photos or voice clone)"""
    return CreditSelection(
        use_personal_image=bool(use_personal_image and profile.has_personal_images),
        use_voice_clone=bool(use_voice_clone and profile.has_personal_voice),
    )


def has_enough_credits(current_credits: int, use_personal_image: bool = False, use_voice_clone: bool = False) -> bool:
    cost = calculate_credit_cost(use_personal_image, use_voice_clone)
    return current_credits >= cost.total


def get_remaining_affirmations(current_credits: int, min_cost: int = BASE_AFFIRMATION_COST) -> int:
    """How many basic affirmations the balance still covers"""
    return current_credits // min_cost


def is_low_on_credits(current_credits: int) -> bool:
    """Less than two basic affirmations left; only drives a warning"""
    return current_credits < BASE_AFFIRMATION_COST * 2


def credit_summary(current_credits: int) -> Dict:
    return {
        "credits": current_credits,
        "remaining_affirmations": get_remaining_affirmations(current_credits),
        "low_on_credits": is_low_on_credits(current_credits),
        "prices": {
            "base": BASE_AFFIRMATION_COST,
            "personal_image": PERSONAL_IMAGE_COST,
            "voice_clone": VOICE_CLONE_COST,
        },
    }
