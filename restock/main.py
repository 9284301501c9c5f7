"""
Restock Replenishment Engine
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from contextlib import asynccontextmanager

from restock.config import get_settings
from restock.models.base import SessionLocal
from restock.utils.cache import ReadThroughCache
from restock.utils.logger import log
from restock import __version__

# Import routers
from restock.api import health, replenishment, metric_duplicates

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        from restock.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Start the scheduler for the nightly recompute
    scheduler_started = False
    if settings.enable_scheduler:
        try:
            from restock.scheduler import start_scheduler
            start_scheduler(cache=app.state.ranked_cache)
            scheduler_started = True
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    if scheduler_started:
        from restock.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Inventory replenishment and sales-velocity engine

    - Recomputes per-variant restocking recommendations from a trailing sales window
    - Ranks variants by urgency tier and days of supply
    - Exports the ranking as CSV and flags variants for discontinuation
    - Audits and repairs duplicated per-day sales metrics
    """,
    lifespan=lifespan
)

app.state.session_factory = SessionLocal
app.state.ranked_cache = ReadThroughCache(ttl_seconds=settings.ranked_cache_ttl_seconds)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Gzip compression for large ranked listings and CSV exports
app.add_middleware(GZipMiddleware, minimum_size=500)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(replenishment.router)
app.include_router(metric_duplicates.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "health": "GET /health",
            "status": "GET /status",
            "recompute": "POST /replenishment/recompute",
            "ranked": "GET /replenishment/{tenant_id}/ranked",
            "export_csv": "GET /replenishment/{tenant_id}/export.csv",
            "discontinuation_flags": "POST /replenishment/{tenant_id}/discontinuation-flags",
            "variant_history": "GET /replenishment/{tenant_id}/variants/{variant_id}/history",
            "runs": "GET /replenishment/{tenant_id}/runs",
            "duplicates_investigate": "POST /sales-metrics/duplicates/investigate",
            "duplicates_clean": "POST /sales-metrics/duplicates/clean",
            "duplicates_validate": "POST /sales-metrics/duplicates/validate",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "restock.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
