from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import os
import time
import asyncio
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from app import __version__
from app.routers import affirmations, auth, generation, user
from app.core.logging import setup_logging
from app.core.config import get_settings, missing_provider_vars, missing_startup_vars
from app.core.errors import AppError, app_error_handler
from app.core.supabase_client import get_supabase_client, close_connections
from app.core.cache import cache_cleanup_task
from app.core.tasks import background_tasks

# Request size limiting middleware
class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, max_size: int = 30 * 1024 * 1024):  # voice samples can be large
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_size:
            return JSONResponse(
                status_code=413,
                content={"detail": "Request entity too large"}
            )
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f}ms)")
        return response

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown"""
    logger.info("Starting AiAm API server...")

    missing_vars = missing_startup_vars()
    if missing_vars:
        logger.error(f"Missing required environment variables: {', '.join(missing_vars)}")
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing_vars)}")

    # Provider keys are only needed by the features that use them
    missing_providers = missing_provider_vars()
    if missing_providers:
        logger.warning(f"Provider keys not configured, related features will fail: {', '.join(missing_providers)}")
    else:
        logger.info("All required environment variables are present")

    # Start cache cleanup task
    cleanup_task = asyncio.create_task(cache_cleanup_task())
    logger.info("Started cache cleanup task")

    yield

    # Cancel cleanup task
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass

    logger.info("Shutting down AiAm API server...")
    if background_tasks.pending:
        logger.info(f"Cancelling {background_tasks.pending} background tasks")
    await background_tasks.cancel_all()
    # Close connection pool
    await close_connections()

# Create FastAPI app with lifespan
app = FastAPI(
    title="AiAm API",
    description="Backend API for the AiAm affirmations application",
    version=__version__,
    lifespan=lifespan
)

app.add_exception_handler(AppError, app_error_handler)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "internal_error"}
    )


app.add_middleware(RequestSizeLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Voice-Id", "X-Credits-Charged", "X-Credits-Remaining"],
)

# Include routers
app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(generation.router, prefix="/api/generate", tags=["Generation"])
app.include_router(affirmations.router, prefix="/api/affirmations", tags=["Affirmations"])
app.include_router(user.router, prefix="/api/user", tags=["User"])

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Welcome to AiAm API",
        "version": __version__,
        "docs": "/docs"
    }

@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring"""
    try:
        # Test database connection
        client = get_supabase_client()
        response = await asyncio.to_thread(client.table("users").select("id").limit(1).execute)
        db_status = "healthy" if hasattr(response, 'data') else "unhealthy"
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        db_status = "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "services": {
            "api": "healthy",
            "database": db_status,
            "providers": "healthy" if not missing_provider_vars() else "degraded",
        }
    }

# This is important - it needs to be at module level for uvicorn to find it
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=get_settings().environment == "development"
    )
