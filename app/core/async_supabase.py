# app/core/async_supabase.py
import asyncio
from datetime import datetime, timezone
from functools import partial
from io import BytesIO
from typing import Any, Dict, List, Optional
import logging

from .supabase_client import get_supabase_client

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def extract_data(response) -> List[Dict[str, Any]]:
    """Safely extract data payload from Supabase responses"""
    if response is None:
        return []
    data = getattr(response, "data", None)
    if data is None and isinstance(response, dict):
        data = response.get("data")
    if isinstance(data, dict):
        return [data]
    return data or []


def extract_error(response):
    """Extract error payload from Supabase responses"""
    if response is None:
        return None
    error = getattr(response, "error", None)
    if error is None and isinstance(response, dict):
        error = response.get("error")
    return error


class AsyncSupabaseClient:
    """Async wrapper for Supabase client operations.

    The supabase-py client is synchronous, so every call is pushed to the
    default executor. Tables act as the document store and the storage
    buckets as the blob store.
    """

    def __init__(self):
        self._client = None

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    async def _run(self, func):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)

    async def table_insert(self, table_name: str, data: Any):
        """Async wrapper for table insert operations"""
        func = partial(self.client.table(table_name).insert(data).execute)
        return await self._run(func)

    async def table_update(self, table_name: str, data: Dict[str, Any], **filters):
        """Async wrapper for table update operations.

        Returns the updated rows, so an empty result means no row matched
        the filters (used for compare-and-swap writes).
        """
        query = self.client.table(table_name).update(data)

        # Apply filters
        for key, value in filters.items():
            if key == "eq":
                for field, val in value.items():
                    query = query.eq(field, val)

        func = partial(query.execute)
        return await self._run(func)

    async def table_select(self, table_name: str, columns: str = "*", **filters):
        """Async wrapper for table select operations"""
        query = self.client.table(table_name).select(columns)

        # Apply filters
        for key, value in filters.items():
            if key == "eq":
                for field, val in value.items():
                    query = query.eq(field, val)
            elif key == "single":
                if value:
                    query = query.single()
            elif key == "order":
                for field, desc in value.items():
                    query = query.order(field, desc=desc)
            elif key == "limit":
                query = query.limit(value)

        func = partial(query.execute)
        return await self._run(func)

    async def storage_upload(self, bucket: str, path: str, data: bytes, options: Dict[str, str]):
        """Upload bytes to Supabase storage"""
        def _upload():
            buffer = BytesIO(data)
            buffer.seek(0)
            return self.client.storage.from_(bucket).upload(path, buffer.getvalue(), file_options=options)

        return await self._run(_upload)

    async def storage_public_url(self, bucket: str, path: str) -> Optional[str]:
        """Retrieve public URL for a storage object"""
        response = await self._run(partial(self.client.storage.from_(bucket).get_public_url, path))

        if isinstance(response, str):
            return response

        data = getattr(response, "data", None)
        if isinstance(data, dict):
            return data.get("publicUrl") or data.get("public_url")

        if isinstance(response, dict):
            data = response.get("data")
            if isinstance(data, dict):
                return data.get("publicUrl") or data.get("public_url")

        return None

    async def auth_get_user(self, jwt: str):
        """Async wrapper for getting user from JWT"""
        func = partial(self.client.auth.get_user, jwt)
        return await self._run(func)


# Create a singleton instance
async_supabase_client = AsyncSupabaseClient()
