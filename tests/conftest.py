import os
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

# Settings are read once per process; give the app a complete environment
os.environ.setdefault("SUPABASE_URL", "https://project.supabase.test")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-key")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("REPLICATE_API_TOKEN", "r8_test")
os.environ.setdefault("ELEVENLABS_API_KEY", "xi-test")

from app.core.cache import profile_cache
from app.core.config import get_settings
from app.core.tasks import BackgroundTasks
from app.models.user import Session, new_profile_record, profile_from_record
from app.services.affirmation_store import AffirmationStore
from app.services.audio_cache import AudioCache
from app.services.image_service import ImageResult
from app.services.ledger_service import CreditLedger
from app.services.orchestrator import GenerationOrchestrator
from app.services.progress_tracker import ProgressTracker
from app.services.storage_service import RehostResult

USER_ID = "user-1"
USER_EMAIL = "ada@aiam.app"


class FakeSupabase:
    """In-memory stand-in for AsyncSupabaseClient (tables and one bucket)"""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.objects: Dict[str, bytes] = {}
        self.fail_inserts = 0
        self.fail_updates = 0
        self.fail_uploads = False
        self.auth_user = None
        # Called before an update is applied; lets tests interleave writers
        self.before_update = None

    @staticmethod
    def _matches(row: Dict[str, Any], eq: Optional[Dict[str, Any]]) -> bool:
        return all(row.get(field) == value for field, value in (eq or {}).items())

    async def table_insert(self, table_name: str, data: Any):
        if self.fail_inserts:
            self.fail_inserts -= 1
            raise RuntimeError("insert failed")
        rows = data if isinstance(data, list) else [data]
        stored = [dict(row) for row in rows]
        self.tables.setdefault(table_name, []).extend(stored)
        return SimpleNamespace(data=[dict(row) for row in stored], error=None)

    async def table_update(self, table_name: str, data: Dict[str, Any], eq=None):
        if self.before_update is not None:
            hook, self.before_update = self.before_update, None
            await hook()
        if self.fail_updates:
            self.fail_updates -= 1
            raise RuntimeError("update failed")
        updated = []
        for row in self.tables.get(table_name, []):
            if self._matches(row, eq):
                row.update(data)
                updated.append(dict(row))
        return SimpleNamespace(data=updated, error=None)

    async def table_select(self, table_name: str, columns: str = "*", eq=None, single=False, order=None, limit=None):
        rows = [dict(row) for row in self.tables.get(table_name, []) if self._matches(row, eq)]
        for field, desc in reversed(list((order or {}).items())):
            rows.sort(key=lambda row: row.get(field) or "", reverse=desc)
        if limit is not None:
            rows = rows[:limit]
        return SimpleNamespace(data=rows, error=None)

    async def storage_upload(self, bucket: str, path: str, data: bytes, options: Dict[str, str]):
        if self.fail_uploads:
            raise RuntimeError("upload failed")
        self.objects[f"{bucket}/{path}"] = data
        return SimpleNamespace(error=None)

    async def storage_public_url(self, bucket: str, path: str) -> Optional[str]:
        return f"https://storage.test/{bucket}/{path}"

    async def auth_get_user(self, jwt: str):
        return SimpleNamespace(user=self.auth_user)

    # --- helpers for tests ---

    def add_user(self, user_id: str = USER_ID, **fields) -> Dict[str, Any]:
        record = new_profile_record(user_id, USER_EMAIL, "2026-01-01T00:00:00+00:00")
        record.update(fields)
        self.tables.setdefault("users", []).append(record)
        return record

    def credits(self, user_id: str = USER_ID) -> int:
        return next(row["credits"] for row in self.tables["users"] if row["id"] == user_id)

    def affirmations(self) -> List[Dict[str, Any]]:
        return self.tables.get("affirmations", [])


@pytest.fixture(autouse=True)
def clear_caches():
    get_settings.cache_clear()
    profile_cache._cache.clear()
    yield
    profile_cache._cache.clear()


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeSupabase()
    monkeypatch.setattr("app.core.auth.async_supabase_client", db)
    monkeypatch.setattr("app.services.storage_service.async_supabase_client", db)
    return db


@pytest.fixture
def image_generator():
    generator = MagicMock()
    generator.generate = AsyncMock(return_value=ImageResult(
        url="https://replicate.delivery/out.jpg",
        prompt="a sunrise over calm water",
        model="google/nano-banana:abc123",
    ))
    return generator


@pytest.fixture
def rehoster():
    async def rehost(source_url, user_id, affirmation_id):
        return RehostResult(url=f"https://storage.test/{user_id}/{affirmation_id}.jpg", rehosted=True)
    return AsyncMock(side_effect=rehost)


@pytest.fixture
def orchestrator(fake_db, image_generator, rehoster):
    store = AffirmationStore(db=fake_db)
    return GenerationOrchestrator(
        ledger=CreditLedger(db=fake_db),
        store=store,
        audio=AudioCache(store=store, db=fake_db),
        tracker=ProgressTracker(),
        tasks=BackgroundTasks(),
        images=image_generator,
        text_generator=AsyncMock(return_value="I am steady, capable and ready for the day ahead."),
        speech_synthesizer=AsyncMock(return_value=b"ID3-fake-mp3"),
        image_rehoster=rehoster,
    )


@pytest.fixture
def session_for(fake_db):
    """Build a Session from the user row as currently stored"""
    def make(user_id: str = USER_ID) -> Session:
        record = next(row for row in fake_db.tables["users"] if row["id"] == user_id)
        return Session(user_id=user_id, profile=profile_from_record(record))
    return make
