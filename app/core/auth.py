# app/core/auth.py
from fastapi import HTTPException, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Any, Dict, Optional
import logging

from .async_supabase import async_supabase_client, extract_data, extract_error, utc_now
from .cache import PROFILE_TTL_SECONDS, profile_cache, profile_cache_key
from .errors import PersistenceFailure
from app.models.user import USERS_TABLE, Session, UserProfile, new_profile_record, profile_from_record

logger = logging.getLogger(__name__)

security = HTTPBearer()


class AuthError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


async def verify_token_with_supabase(token: str) -> Dict[str, Any]:
    """Resolve a bearer token to the identity provider's user"""
    if not token:
        raise AuthError("No authentication token provided")

    # A JWT has three dot-separated parts
    token_parts = token.split('.')
    if len(token_parts) != 3:
        logger.warning(f"Invalid token format - expected 3 parts, got {len(token_parts)}")
        raise AuthError("Invalid token format")

    try:
        user_response = await async_supabase_client.auth_get_user(token)
    except Exception as e:
        logger.error(f"Token verification failed: {type(e).__name__}: {str(e)}")
        raise AuthError("Failed to verify token")

    user = getattr(user_response, "user", None)
    if not user or not getattr(user, "id", None):
        logger.warning("Invalid token - no user returned")
        raise AuthError("Invalid authentication token")

    return {"id": user.id, "email": getattr(user, "email", None)}


async def load_profile(user_id: str, email: Optional[str] = None) -> UserProfile:
    """Read the user's profile, creating it on first authentication"""
    cache_key = profile_cache_key(user_id)
    cached = await profile_cache.get(cache_key)
    if cached:
        return cached

    try:
        response = await async_supabase_client.table_select(USERS_TABLE, "*", eq={"id": user_id})
        rows = extract_data(response)
    except Exception as e:
        logger.error(f"Error loading profile for {user_id}: {str(e)}")
        raise PersistenceFailure("Unable to load your profile.", detail=str(e))

    if rows:
        record = rows[0]
    else:
        logger.info(f"Creating new user record for {user_id}")
        record = new_profile_record(user_id, email, utc_now())
        try:
            insert_response = await async_supabase_client.table_insert(USERS_TABLE, record)
            insert_error = extract_error(insert_response)
            if insert_error:
                raise RuntimeError(str(insert_error))
        except Exception as insert_error:
            logger.warning(f"Failed to create user record, re-reading: {str(insert_error)}")
            # A concurrent first request may have created it
            response = await async_supabase_client.table_select(USERS_TABLE, "*", eq={"id": user_id})
            rows = extract_data(response)
            if not rows:
                raise PersistenceFailure("Unable to create your profile.", detail=str(insert_error))
            record = rows[0]

    profile = profile_from_record(record)
    await profile_cache.set(cache_key, profile, ttl=PROFILE_TTL_SECONDS)
    return profile


async def update_profile(user_id: str, fields: Dict[str, Any]) -> UserProfile:
    """Write profile fields and return the fresh profile"""
    data = dict(fields)
    data["updated_at"] = utc_now()

    try:
        response = await async_supabase_client.table_update(USERS_TABLE, data, eq={"id": user_id})
    except Exception as e:
        logger.error(f"Error updating user profile {user_id}: {str(e)}")
        raise PersistenceFailure("Failed to update profile.", detail=str(e))

    error = extract_error(response)
    if error:
        logger.error(f"Profile update rejected for {user_id}: {error}")
        raise PersistenceFailure("Failed to update profile.", detail=str(error))

    await profile_cache.delete(profile_cache_key(user_id))
    return await load_profile(user_id)


async def get_current_session(credentials: HTTPAuthorizationCredentials = Security(security)) -> Session:
    """FastAPI dependency: the authenticated caller and their profile"""
    identity = await verify_token_with_supabase(credentials.credentials)
    profile = await load_profile(identity["id"], identity.get("email"))
    return Session(user_id=profile.id, profile=profile)
