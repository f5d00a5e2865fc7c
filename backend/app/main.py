"""Main FastAPI application."""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from app.config import settings
from app.database import Base
from app.exceptions import OutreachError

# Import models to register them with SQLAlchemy
from app import models  # noqa: F401

from app.routers import cron_routes, inbox_routes, prospection_routes, webhook_routes
from app.scheduler import start_scheduler, stop_scheduler
from app.services.send_lock import build_send_lock

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="LinkedIn Outreach Engine API",
    description="Identity reconciliation, inbox mirror and outbound messaging over Unipile",
    version="1.0.0",
    redirect_slashes=False
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify your frontend domain
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.send_lock = build_send_lock()


@app.exception_handler(OutreachError)
async def outreach_error_handler(request: Request, exc: OutreachError):
    """Domain errors carry their own HTTP status and user-facing message."""
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc.code} ({exc.message})")
    else:
        logger.info(f"{request.url.path} rejected: {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============================================
# ROUTER REGISTRATION
# ============================================

app.include_router(webhook_routes.router)
app.include_router(prospection_routes.router)
app.include_router(inbox_routes.router)
app.include_router(cron_routes.router)


# ============================================
# HEALTH & ROOT ENDPOINTS
# ============================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "registered_tables": len(Base.metadata.tables),
        "features": [
            "unipile_webhooks",
            "linkedin_messaging",
            "linkedin_invitations",
            "inbox_sync",
            "invitation_cron",
        ]
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "LinkedIn Outreach Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }


# ============================================
# STARTUP & SHUTDOWN
# ============================================

@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info("Starting LinkedIn Outreach Engine API...")
    logger.info(f"Registered {len(Base.metadata.tables)} SQLAlchemy tables")

    if settings.ENABLE_LINKEDIN_CRON:
        start_scheduler()
    else:
        logger.info("LinkedIn cron disabled (ENABLE_LINKEDIN_CRON=false)")

    logger.info("Application started successfully!")


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("Shutting down LinkedIn Outreach Engine API...")
    stop_scheduler()
    close = getattr(app.state.send_lock, "close", None)
    if close is not None:
        await close()
