"""
MedNudge Backend
FastAPI application for medication reminders and escalation chains
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Configuration and database
from config import settings
from database import init_db, DatabaseHealthCheck

from api import include_routers
from exceptions import NotFoundError
from queues.backends import InMemoryJobBackend
from queues.workers import start_workers
from services.container import get_container
from tools.clock import utcnow

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT
)
logger = logging.getLogger(__name__)


async def _drive_memory_backend(container, interval: float = 1.0):
    """Dispatch due jobs and run the missed-dose sweep when queues run in-process"""
    last_sweep = utcnow()
    while True:
        try:
            await container.backend.run_due()
            if (utcnow() - last_sweep).total_seconds() >= settings.MISSED_SWEEP_INTERVAL_SECONDS:
                last_sweep = utcnow()
                await container.escalation_service.expire_unanswered()
        except Exception as e:
            logger.error(f"In-process queue driver error: {e}", exc_info=True)
        await asyncio.sleep(interval)


# ==================== LIFESPAN ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown"""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENV}")

    # Initialize database
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    driver = None
    container = get_container()
    if isinstance(container.backend, InMemoryJobBackend):
        # No Celery worker: consume jobs in this process
        start_workers(container)
        driver = asyncio.create_task(_drive_memory_backend(container))
        logger.info("In-process queue workers started")

    yield

    # Shutdown
    if driver is not None:
        driver.cancel()
    logger.info(f"Shutting down {settings.APP_NAME}")


# ==================== APP INITIALIZATION ====================

app = FastAPI(
    title=settings.APP_NAME,
    description="""
    ## MedNudge API

    Medication reminders that escalate when they go unanswered.

    ### Features
    - **Schedule Expansion**: Turns recurring medication schedules into timed doses
    - **Reminders**: Delayed, retried reminder delivery per dose
    - **Escalation**: Urgent text, voice note, voice call, caregiver and clinic alerts
    - **Analytics**: Escalation history and pattern flags per patient
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Attach modular API routers (prefix /api/v1)
include_routers(app)


# ==================== EXCEPTION HANDLERS ====================

def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": True,
            "message": message,
            "status_code": status_code,
            "timestamp": utcnow().isoformat()
        }
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    return _error_response(exc.status_code, exc.detail)


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return _error_response(404, str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return _error_response(400, str(exc))


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return _error_response(500, "An unexpected error occurred" if not settings.DEBUG else str(exc))


# ==================== HEALTH ENDPOINTS ====================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - basic health check"""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "healthy",
        "timestamp": utcnow().isoformat()
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Detailed health check endpoint"""
    db_connected = DatabaseHealthCheck.is_connected()

    return {
        "status": "healthy" if db_connected else "degraded",
        "timestamp": utcnow().isoformat(),
        "checks": {
            "database": {
                "status": "up" if db_connected else "down",
                "type": "sqlite" if "sqlite" in settings.DATABASE_URL else "postgresql"
            },
            "queues": {
                "backend": settings.QUEUE_BACKEND,
                "voice_calls": settings.ENABLE_VOICE_CALLS
            }
        },
        "version": settings.APP_VERSION,
        "environment": settings.ENV
    }


# ==================== MAIN ====================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
