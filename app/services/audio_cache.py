# app/services/audio_cache.py
import logging
from typing import Optional

from app.services.affirmation_store import AffirmationStore, affirmation_store
from app.services.storage_service import audio_path, store_bytes

logger = logging.getLogger(__name__)

AUDIO_CONTENT_TYPE = "audio/mpeg"


class AudioCache:
    """Synthesised audio per (affirmation, voice).

    Entries live on the affirmation document. The first URL written for a
    voice is kept; later writes return that URL and never replace it, and
    entries are never removed.
    """

    def __init__(self, store: Optional[AffirmationStore] = None, db=None):
        self.store = store or affirmation_store
        self.db = db

    async def get(self, user_id: str, affirmation_id: str, voice_id: str) -> Optional[str]:
        affirmation = await self.store.get(user_id, affirmation_id)
        return affirmation.audio_urls.get(voice_id)

    async def put(self, user_id: str, affirmation_id: str, voice_id: str, url: str) -> str:
        return await self.store.put_audio_url(user_id, affirmation_id, voice_id, url)

    async def store_and_put(self, user_id: str, affirmation_id: str, voice_id: str, audio: bytes) -> str:
        """Upload synthesised audio and record it; runs after playback has started"""
        url = await store_bytes(audio, audio_path(user_id, affirmation_id, voice_id), AUDIO_CONTENT_TYPE, db=self.db)
        stored = await self.put(user_id, affirmation_id, voice_id, url)
        if stored != url:
            logger.info(f"Audio for {affirmation_id}/{voice_id} was cached by another request")
        return stored


audio_cache = AudioCache()
