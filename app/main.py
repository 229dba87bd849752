"""
Platform Sync Engine
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.config import get_settings
from app.utils.logger import log
from app import __version__

# Import routers
from app.api import health, sync

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        from app.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Resume bulk imports orphaned by a restart
    scheduler_started = False
    if settings.enable_scheduler:
        try:
            from app.scheduler import start_scheduler
            start_scheduler()
            scheduler_started = True
            log.info("Scheduler started successfully")
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    if scheduler_started:
        from app.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    External-platform data sync engine

    Onboards a newly authorized Shopify store or Meta ad account in two phases:
    - Quick sync: the last few days, returned to the caller within seconds
    - Historical import: vendor bulk exports per entity type, in the background

    Progress is exposed per connection at GET /sync/connections/{id}/status
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(sync.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "app": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "create_connection": "POST /sync/connections",
            "start_sync": "POST /sync/connections/{id}/start",
            "sync_status": "GET /sync/connections/{id}/status",
            "bulk_jobs": "GET /sync/connections/{id}/jobs",
            "resume_bulk_imports": "POST /sync/bulk/resume",
            "refresh_connections": "POST /sync/refresh",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
