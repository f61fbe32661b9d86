# app/models/user.py
from dataclasses import dataclass
from pydantic import BaseModel, EmailStr, Field, ValidationError
from typing import Any, Dict, Literal, Optional
from datetime import datetime

USERS_TABLE = "users"

DEFAULT_CREDITS = 100
DEFAULT_ASPECT_RATIO = "1:1"
ASPECT_RATIOS = ("1:1", "16:9", "9:16", "4:3", "3:4")

AspectRatio = Literal["1:1", "16:9", "9:16", "4:3", "3:4"]
AgeRange = Literal["18-24", "25-34", "35-44", "45-54", "55-64", "65+"]
Gender = Literal["female", "male", "non-binary", "prefer-not-to-say"]
Ethnicity = Literal[
    "black",
    "white",
    "latinx",
    "middle-eastern",
    "south-asian",
    "east-asian",
    "southeast-asian",
    "indigenous",
    "pacific-islander",
    "mixed",
    "other",
    "prefer-not-to-say",
]


class Demographics(BaseModel):
    age_range: Optional[AgeRange] = None
    gender: Optional[Gender] = None
    ethnicity: Optional[Ethnicity] = None
    nationality: Optional[str] = Field(default=None, max_length=80)

    def is_empty(self) -> bool:
        return not any([self.age_range, self.gender, self.ethnicity, self.nationality])


class UserProfile(BaseModel):
    id: str
    email: Optional[EmailStr] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    portrait_image_url: Optional[str] = None
    full_body_image_url: Optional[str] = None
    voice_clone_id: Optional[str] = None
    voice_clone_name: Optional[str] = None
    demographics: Demographics = Field(default_factory=Demographics)
    default_aspect_ratio: AspectRatio = DEFAULT_ASPECT_RATIO
    auto_generate_images: bool = True
    credits: int = Field(default=DEFAULT_CREDITS, ge=0)
    saved_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_personal_images(self) -> bool:
        return bool(self.portrait_image_url and self.full_body_image_url)

    @property
    def has_personal_voice(self) -> bool:
        return bool(self.voice_clone_id)


@dataclass(frozen=True)
class Session:
    """The authenticated caller as seen at the start of a request"""

    user_id: str
    profile: UserProfile

    @property
    def credits(self) -> int:
        return self.profile.credits


class ProfileUpdate(BaseModel):
    """Fields a user may change from the account page. Credits are not among them."""

    display_name: Optional[str] = Field(default=None, max_length=120)
    photo_url: Optional[str] = None
    demographics: Optional[Demographics] = None
    default_aspect_ratio: Optional[AspectRatio] = None
    auto_generate_images: Optional[bool] = None


class UserCreditsUpdate(BaseModel):
    credits: int


class CreditSummary(BaseModel):
    credits: int
    remaining_affirmations: int
    low_on_credits: bool
    prices: Dict[str, int]


class VoiceCloneResponse(BaseModel):
    voice_id: str
    voice_name: str


def new_profile_record(user_id: str, email: Optional[str], now: str) -> Dict[str, Any]:
    """Document written on first successful authentication"""
    return {
        "id": user_id,
        "email": email,
        "display_name": None,
        "photo_url": None,
        "portrait_image_url": None,
        "full_body_image_url": None,
        "voice_clone_id": None,
        "voice_clone_name": None,
        "age_range": None,
        "gender": None,
        "ethnicity": None,
        "nationality": None,
        "auto_generate_images": True,
        "default_aspect_ratio": DEFAULT_ASPECT_RATIO,
        "credits": DEFAULT_CREDITS,
        "saved_count": 0,
        "created_at": now,
        "updated_at": now,
    }


def profile_from_record(record: Dict[str, Any]) -> UserProfile:
    """Build a profile from a stored document, filling defaults for bad or missing fields"""
    credits = record.get("credits")
    saved_count = record.get("saved_count")
    auto_generate = record.get("auto_generate_images")
    aspect_ratio = record.get("default_aspect_ratio")

    try:
        demographics = Demographics.model_validate({
            key: record.get(key)
            for key in ("age_range", "gender", "ethnicity", "nationality")
        })
    except ValidationError:
        demographics = Demographics()

    return UserProfile(
        id=record["id"],
        email=record.get("email"),
        display_name=record.get("display_name"),
        photo_url=record.get("photo_url"),
        portrait_image_url=record.get("portrait_image_url"),
        full_body_image_url=record.get("full_body_image_url"),
        voice_clone_id=record.get("voice_clone_id"),
        voice_clone_name=record.get("voice_clone_name"),
        demographics=demographics,
        default_aspect_ratio=aspect_ratio if aspect_ratio in ASPECT_RATIOS else DEFAULT_ASPECT_RATIO,
        auto_generate_images=auto_generate if isinstance(auto_generate, bool) else True,
        credits=max(credits, 0) if isinstance(credits, int) else DEFAULT_CREDITS,
        saved_count=saved_count if isinstance(saved_count, int) else 0,
        created_at=record.get("created_at"),
        updated_at=record.get("updated_at"),
    )
