import pytest

from app.models.user import UserProfile
from app.services.credit_service import (
    BASE_AFFIRMATION_COST,
    PERSONAL_IMAGE_COST,
    VOICE_CLONE_COST,
    calculate_credit_cost,
    credit_summary,
    effective_selection,
    get_remaining_affirmations,
    has_enough_credits,
    is_low_on_credits,
)


@pytest.mark.parametrize("personal, voice, total", [
    (False, False, 20),
    (True, False, 30),
    (False, True, 40),
    (True, True, 50),
])
def test_cost_is_base_plus_selected_addons(personal, voice, total):
    cost = calculate_credit_cost(use_personal_image=personal, use_voice_clone=voice)
    assert cost.total == total
    assert cost.base + cost.personal_image + cost.voice_clone == cost.total


def test_cost_breakdown_shows_zero_for_unselected_addons():
    cost = calculate_credit_cost(use_personal_image=True)
    assert cost.as_dict() == {"base": 20, "personal_image": 10, "voice_clone": 0, "total": 30}


def test_has_enough_credits_uses_the_full_total():
    assert has_enough_credits(50, use_personal_image=True, use_voice_clone=True)
    assert not has_enough_credits(49, use_personal_image=True, use_voice_clone=True)
    assert has_enough_credits(BASE_AFFIRMATION_COST)


def test_low_credit_threshold_is_two_base_affirmations():
    assert is_low_on_credits(39)
    assert not is_low_on_credits(40)


def test_remaining_affirmations_rounds_down():
    assert get_remaining_affirmations(59) == 2
    assert get_remaining_affirmations(0) == 0
    assert get_remaining_affirmations(60, min_cost=30) == 2


def test_selection_ignores_toggles_without_assets():
    profile = UserProfile(id="u", portrait_image_url="https://x/p.jpg")
    selection = effective_selection(profile, use_personal_image=True, use_voice_clone=True)
    assert not selection.use_personal_image
    assert not selection.use_voice_clone


def test_selection_keeps_toggles_with_assets():
    profile = UserProfile(
        id="u",
        portrait_image_url="https://x/p.jpg",
        full_body_image_url="https://x/f.jpg",
        voice_clone_id="voice-123",
    )
    selection = effective_selection(profile, use_personal_image=True, use_voice_clone=True)
    assert selection.use_personal_image and selection.use_voice_clone


def test_credit_summary_lists_prices():
    summary = credit_summary(45)
    assert summary["remaining_affirmations"] == 2
    assert summary["low_on_credits"] is False
    assert summary["prices"] == {
        "base": BASE_AFFIRMATION_COST,
        "personal_image": PERSONAL_IMAGE_COST,
        "voice_clone": VOICE_CLONE_COST,
    }
