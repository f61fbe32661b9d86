# app/models/affirmation.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

from slugify import slugify

from app.models.user import AspectRatio, Demographics

# Category ids and display titles shown on the dashboard grid
CATEGORIES: Dict[str, str] = {
    "housing-home": "Housing & Home",
    "finance-wealth": "Finance & Wealth",
    "health-wellbeing": "Health & Wellbeing",
    "travel-adventure": "Travel & Adventure",
    "relationships-love": "Relationships & Love",
    "creativity-expression": "Creativity & Expression",
    "career-employment": "Career & Employment",
    "education-knowledge": "Education & Knowledge",
    "spirituality-peace": "Spirituality & Inner Peace",
    "personal-growth": "Personal Growth & Development",
    "self-confidence": "Self-Confidence & Empowerment",
    "joy-happiness": "Joy & Happiness",
}


class Affirmation(BaseModel):
    id: str
    user_id: str
    affirmation: str
    category_id: str
    category_title: str
    image_url: Optional[str] = None
    audio_urls: Dict[str, str] = Field(default_factory=dict)
    favorite: bool = False
    voice_clone_paid: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CategoryInfo(BaseModel):
    id: str
    title: str


class CostBreakdown(BaseModel):
    base: int
    personal_image: int
    voice_clone: int
    total: int


# --- Orchestrated flows ---

class CreateAffirmationRequest(BaseModel):
    category_id: str = Field(min_length=1, max_length=80)
    category_title: Optional[str] = Field(default=None, max_length=120)
    use_personal_image: bool = False
    use_voice_clone: bool = False
    # Idempotency key; retrying with the same id never charges twice
    request_id: Optional[str] = Field(default=None, max_length=64)


class CreateAffirmationResponse(BaseModel):
    request_id: str
    affirmation: Affirmation
    cost: CostBreakdown
    credits_remaining: int
    low_on_credits: bool
    image_pending: bool


class AddImageRequest(BaseModel):
    use_personal_image: bool = False


class AddImageResponse(BaseModel):
    affirmation_id: str
    image_url: str
    rehosted: bool
    credits_charged: int
    credits_remaining: int


class SpeakRequest(BaseModel):
    voice_id: Optional[str] = None
    use_my_voice: bool = False


class FavoriteUpdate(BaseModel):
    favorite: bool


class AffirmationListResponse(BaseModel):
    affirmations: List[Affirmation]
    categories: List[CategoryInfo]


class PlaylistEntry(BaseModel):
    affirmation_id: str
    text: str
    audio_url: Optional[str] = None


class PlaylistResponse(BaseModel):
    voice_id: str
    entries: List[PlaylistEntry]


class GenerationStatus(BaseModel):
    request_id: str
    state: str
    reason: Optional[str] = None
    affirmation_id: Optional[str] = None
    elapsed_time: float = 0.0
    history: List[Dict[str, Any]] = Field(default_factory=list)


# --- Thin provider endpoints ---

class GenerateTextRequest(BaseModel):
    category: str = Field(min_length=1, max_length=120)


class GenerateTextResponse(BaseModel):
    affirmation: str
    credits_charged: int
    credits_remaining: int


class UserImages(BaseModel):
    portrait: Optional[str] = None
    full_body: Optional[str] = None


class GenerateImageRequest(BaseModel):
    affirmation: str
    category: Optional[str] = None
    use_user_images: bool = False
    # Must name the photos saved on the caller's profile when given
    user_images: Optional[UserImages] = None
    aspect_ratio: AspectRatio = "1:1"
    demographics: Optional[Demographics] = None


class GenerateImageResponse(BaseModel):
    image_url: str
    credits_charged: int
    credits_remaining: int


class SynthesizeSpeechRequest(BaseModel):
    text: str = Field(min_length=1, max_length=500)
    voice_id: Optional[str] = None


class VoiceInfo(BaseModel):
    voice_id: str
    name: str
    description: str


class VoiceListResponse(BaseModel):
    voices: List[VoiceInfo]


def resolve_category(category_id: str, category_title: Optional[str] = None) -> CategoryInfo:
    """Normalise a category id and find its display title.

    Unknown ids are accepted; their title comes from the request or, failing
    that, from the id itself.
    """
    slug = slugify(category_id) or category_id
    title = (category_title or "").strip() or CATEGORIES.get(slug) or slug.replace("-", " ").title()
    return CategoryInfo(id=slug, title=title)
