# app/services/affirmation_store.py
import logging
import uuid
from typing import Dict, List, Optional

from app.core.async_supabase import async_supabase_client, extract_data, extract_error, utc_now
from app.core.errors import AffirmationNotFound, PersistenceFailure
from app.models.affirmation import Affirmation, CategoryInfo

logger = logging.getLogger(__name__)

AFFIRMATIONS_TABLE = "affirmations"

# Conditional audio writes retried before giving up
MAX_AUDIO_WRITE_ATTEMPTS = 5


class AffirmationStore:
    """Document operations on a user's affirmation library"""

    def __init__(self, db=None):
        self.db = db or async_supabase_client

    async def _select(self, **filters) -> List[dict]:
        try:
            response = await self.db.table_select(AFFIRMATIONS_TABLE, "*", **filters)
        except Exception as e:
            logger.error(f"Error reading affirmations: {str(e)}")
            raise PersistenceFailure("Unable to load your affirmations.", detail=str(e))
        return extract_data(response)

    async def _update(self, user_id: str, affirmation_id: str, data: dict, **extra_eq) -> List[dict]:
        eq = {"id": affirmation_id, "user_id": user_id}
        eq.update(extra_eq)
        try:
            response = await self.db.table_update(AFFIRMATIONS_TABLE, data, eq=eq)
        except Exception as e:
            logger.error(f"Error updating affirmation {affirmation_id}: {str(e)}")
            raise PersistenceFailure("Unable to save your affirmation.", detail=str(e))

        error = extract_error(response)
        if error:
            logger.error(f"Affirmation update rejected for {affirmation_id}: {error}")
            raise PersistenceFailure("Unable to save your affirmation.", detail=str(error))
        return extract_data(response)

    async def create(
        self,
        user_id: str,
        text: str,
        category_id: str,
        category_title: str,
        voice_clone_paid: bool = False,
    ) -> Affirmation:
        now = utc_now()
        record = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "affirmation": text,
            "category_id": category_id,
            "category_title": category_title,
            "image_url": None,
            "audio_urls": {},
            "favorite": False,
            "voice_clone_paid": voice_clone_paid,
            "created_at": now,
            "updated_at": now,
        }

        try:
            response = await self.db.table_insert(AFFIRMATIONS_TABLE, record)
        except Exception as e:
            logger.error(f"Error saving affirmation for {user_id}: {str(e)}")
            raise PersistenceFailure("Unable to save your affirmation.", detail=str(e))

        error = extract_error(response)
        if error:
            logger.error(f"Affirmation insert rejected for {user_id}: {error}")
            raise PersistenceFailure("Unable to save your affirmation.", detail=str(error))

        rows = extract_data(response)
        logger.info(f"Saved affirmation {record['id']} for {user_id} in '{category_id}'")
        return Affirmation.model_validate(rows[0] if rows else record)

    async def get(self, user_id: str, affirmation_id: str) -> Affirmation:
        rows = await self._select(eq={"id": affirmation_id, "user_id": user_id})
        if not rows:
            raise AffirmationNotFound(detail=affirmation_id)
        return Affirmation.model_validate(rows[0])

    async def list_for_user(
        self,
        user_id: str,
        favorites_only: bool = False,
        category_id: Optional[str] = None,
    ) -> List[Affirmation]:
        eq = {"user_id": user_id}
        if favorites_only:
            eq["favorite"] = True
        if category_id:
            eq["category_id"] = category_id

        rows = await self._select(eq=eq, order={"created_at": True})
        return [Affirmation.model_validate(row) for row in rows]

    async def categories_for_user(self, user_id: str) -> List[CategoryInfo]:
        """Distinct categories the user has saved affirmations in"""
        seen: Dict[str, str] = {}
        for affirmation in await self.list_for_user(user_id):
            seen.setdefault(affirmation.category_id, affirmation.category_title)
        return [CategoryInfo(id=key, title=title) for key, title in seen.items()]

    async def set_image(self, user_id: str, affirmation_id: str, image_url: str) -> Affirmation:
        rows = await self._update(user_id, affirmation_id, {"image_url": image_url, "updated_at": utc_now()})
        if not rows:
            raise AffirmationNotFound(detail=affirmation_id)
        return Affirmation.model_validate(rows[0])

    async def set_favorite(self, user_id: str, affirmation_id: str, favorite: bool) -> Affirmation:
        rows = await self._update(user_id, affirmation_id, {"favorite": favorite, "updated_at": utc_now()})
        if not rows:
            raise AffirmationNotFound(detail=affirmation_id)
        return Affirmation.model_validate(rows[0])

    async def set_voice_clone_paid(self, user_id: str, affirmation_id: str, paid: bool) -> bool:
        """Flip the voice surcharge flag; False when it already had that value"""
        rows = await self._update(
            user_id,
            affirmation_id,
            {"voice_clone_paid": paid, "updated_at": utc_now()},
            voice_clone_paid=not paid,
        )
        return bool(rows)

    async def put_audio_url(self, user_id: str, affirmation_id: str, voice_id: str, url: str) -> str:
        """Record the audio URL for a voice unless one is already stored.

        The write is conditional on the ``updated_at`` that was read, so a
        concurrent writer is detected and the loop re-reads. Returns the URL
        that ends up stored for the voice.
        """
        for _ in range(MAX_AUDIO_WRITE_ATTEMPTS):
            current = await self._select(eq={"id": affirmation_id, "user_id": user_id})
            if not current:
                raise AffirmationNotFound(detail=affirmation_id)

            record = current[0]
            audio_urls = dict(record.get("audio_urls") or {})
            if audio_urls.get(voice_id):
                return audio_urls[voice_id]

            audio_urls[voice_id] = url
            rows = await self._update(
                user_id,
                affirmation_id,
                {"audio_urls": audio_urls, "updated_at": utc_now()},
                updated_at=record.get("updated_at"),
            )
            if rows:
                logger.info(f"Cached audio for affirmation {affirmation_id} voice {voice_id}")
                return url

            logger.info(f"Concurrent update on affirmation {affirmation_id}, retrying audio write")

        raise PersistenceFailure(
            "Unable to save the audio for this affirmation.",
            detail=f"audio write contention after {MAX_AUDIO_WRITE_ATTEMPTS} attempts",
        )


affirmation_store = AffirmationStore()
