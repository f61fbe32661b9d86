# app/routers/auth.py
from fastapi import APIRouter
from pydantic import BaseModel
import logging

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthCheck(BaseModel):
    status: str
    message: str


@router.get("/health", response_model=HealthCheck)
async def auth_health():
    """Check if auth service is working"""
    return HealthCheck(
        status="healthy",
        message="Authentication service is running. Auth is handled by Supabase."
    )

# Sign-up, login and logout happen against Supabase on the client;
# the backend only validates bearer tokens (app/core/auth.py)
