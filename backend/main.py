import logging
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from conversation_scheduler import __version__
from conversation_scheduler.api.v1 import api_router
from conversation_scheduler.core.config import settings
from conversation_scheduler.core.exceptions import setup_exception_handlers
from conversation_scheduler.core.logging_config import setup_logging
from conversation_scheduler.services.conversation_events import conversation_events_service
from conversation_scheduler.services.scheduler_service import SchedulerService, build_scheduler_service


logger = logging.getLogger(__name__)

app = FastAPI(
    title="Conversation Scheduler API",
    description="Operator API for stuck conversation detection and recovery",
    version=__version__,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
)

# CORS middleware with secure configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-Organization-Id",
        "X-Requested-With",
        "Accept",
        "Origin",
    ],
    max_age=600,
)

# Exception handlers
setup_exception_handlers(app)

# Routes
app.include_router(api_router, prefix=settings.API_V1_STR)

scheduler: Optional[SchedulerService] = None


@app.get("/")
async def root():
    return {"message": "Conversation Scheduler API", "version": __version__}


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "scheduler_running": bool(scheduler and scheduler.is_running),
    }


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    global scheduler
    setup_logging("DEBUG" if settings.DEBUG else settings.LOG_LEVEL)

    # Skip Redis and background loops in test environment
    if os.environ.get("TESTING"):
        return

    await conversation_events_service.initialize()

    if settings.SCHEDULER_IN_PROCESS:
        if settings.PROCESSING_HANDLER:
            scheduler = build_scheduler_service()
        else:
            logger.warning("PROCESSING_HANDLER is not configured; running the stale sweep only")
            scheduler = SchedulerService()
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup services on shutdown"""
    global scheduler
    if scheduler is not None:
        await scheduler.stop()
        scheduler = None

    if not os.environ.get("TESTING"):
        await conversation_events_service.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True if settings.ENVIRONMENT == "development" else False
    )
