# app/core/supabase_client.py
from supabase import create_client, Client
import logging
from typing import Optional
import httpx

from .config import get_settings

logger = logging.getLogger(__name__)

# Don't initialize at module level
_supabase_client: Optional[Client] = None
_http_client: Optional[httpx.AsyncClient] = None

def get_http_client() -> httpx.AsyncClient:
    """Get or create HTTP client with connection pooling"""
    global _http_client

    if _http_client is None:
        # Configure connection pooling
        limits = httpx.Limits(
            max_keepalive_connections=20,  # Number of connections to keep alive
            max_connections=100,           # Maximum number of connections
            keepalive_expiry=30.0         # How long to keep connections alive (seconds)
        )

        # Per-call timeouts are passed by the provider clients
        _http_client = httpx.AsyncClient(
            limits=limits,
            timeout=httpx.Timeout(30.0),
            http2=True
        )
        logger.info("Initialized HTTP client with connection pooling")

    return _http_client

def set_http_client(client: Optional[httpx.AsyncClient]) -> None:
    """Replace the shared HTTP client (used by tests to inject a mock transport)"""
    global _http_client
    _http_client = client

def get_supabase_client() -> Client:
    """Get or create Supabase client"""
    global _supabase_client

    if _supabase_client is None:
        settings = get_settings()

        if not settings.supabase_url or not settings.supabase_key:
            logger.error("Supabase credentials not found in environment variables")
            raise ValueError("Supabase credentials not configured")

        try:
            _supabase_client = create_client(settings.supabase_url, settings.supabase_key)
            logger.info("Successfully initialized Supabase client")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {e}")
            raise

    return _supabase_client

# Cleanup function for graceful shutdown
async def close_connections():
    """Close HTTP client connections on application shutdown"""
    global _http_client
    if _http_client:
        await _http_client.aclose()
        _http_client = None
        logger.info("Closed HTTP client connections")

__all__ = ["get_supabase_client", "get_http_client", "set_http_client", "close_connections"]
