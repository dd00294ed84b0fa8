"""
STEPSYNC Backend API
Real-time exercise coaching synchronized to a reference video

FastAPI application entry point with REST and WebSocket endpoints.
"""

import logging
import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pathlib import Path
from starlette.middleware.base import BaseHTTPMiddleware

from core.config import settings

LOG_LEVEL = logging.DEBUG if settings.DEBUG else logging.INFO

# ============================================
# Configure Root Logger First
# ============================================
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)]
)

# Service routers
from coach_service.router import router as coach_router
from coach_service.models import RulesetLoadError, get_ruleset, get_session_handler

# Core utilities
from shared.storage import get_storage
from shared.utils import setup_logger

# Setup logging
logger = setup_logger("stepsync.main", level=LOG_LEVEL)
request_logger = setup_logger("stepsync.requests", level=LOG_LEVEL)


# ============================================
# Request Logging Middleware
# ============================================

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all incoming requests and responses with timing."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        client_ip = request.client.host if request.client else "unknown"
        query_string = f"?{request.url.query}" if request.url.query else ""

        request_logger.info(f"➡️  {request.method} {request.url.path}{query_string}")
        request_logger.debug(f"    Client: {client_ip}")

        try:
            response = await call_next(request)

            process_time = (time.time() - start_time) * 1000

            if response.status_code < 300:
                status_emoji = "✅"
            elif response.status_code < 400:
                status_emoji = "↪️"
            elif response.status_code < 500:
                status_emoji = "⚠️"
            else:
                status_emoji = "❌"

            request_logger.info(
                f"{status_emoji} {request.method} {request.url.path} → {response.status_code} ({process_time:.1f}ms)"
            )

            return response
        except Exception as e:
            process_time = (time.time() - start_time) * 1000
            request_logger.exception(
                f"💥 {request.method} {request.url.path} → ERROR: {type(e).__name__}: {str(e)} ({process_time:.1f}ms)"
            )
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown."""
    # ===== STARTUP =====
    logger.info(f"🚀 {settings.APP_NAME} API starting up...")

    # Fail fast on a broken exercise definition
    try:
        ruleset = get_ruleset()
        logger.info(f"📋 Exercise: {ruleset.exercise_name} ({len(ruleset.steps)} steps)")
    except RulesetLoadError as e:
        logger.error(f"❌ Could not load ruleset: {e}")
        raise

    # Create media directories for local storage
    get_storage()

    logger.info(f"✅ {settings.APP_NAME} API ready!")

    yield  # Application runs here

    # ===== SHUTDOWN =====
    logger.info(f"👋 {settings.APP_NAME} API shutting down...")

    handler = get_session_handler()
    for session_id in list(handler.active_sessions):
        # Also closes any pose detector the session opened
        handler.end_session(session_id)

    logger.info("✅ Shutdown complete")


app = FastAPI(
    title="STEPSYNC API",
    description="Real-time exercise coaching synchronized to a reference video",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# Mount static files for media (local storage)
media_path = Path(settings.LOCAL_MEDIA_PATH)
media_path.mkdir(parents=True, exist_ok=True)
app.mount("/media", StaticFiles(directory=str(media_path)), name="media")


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "service": "stepsync-api",
        "active_sessions": len(get_session_handler().active_sessions)
    }


# Include service routers
app.include_router(coach_router, prefix="/api/coach", tags=["Coach Service"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
