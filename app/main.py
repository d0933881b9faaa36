import logging
import os
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.jobs.engine import get_engine
from app.jobs_routes import jobs_router
from app.supabase_client import get_supabase

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Coregre Jobs API",
    description="Background job engine: enqueue, track and download generated reports",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Start the in-process worker pool unless a dedicated worker runs it."""
    port = os.environ.get("PORT", "8000")
    logger.info(f"Jobs API starting on port {port}")
    logger.info(f"Supabase connected: {get_supabase() is not None}")

    if settings.run_in_process:
        await get_engine().pool.start()
    else:
        logger.info("In-process workers disabled; run worker.py to execute jobs")


@app.on_event("shutdown")
async def shutdown_event():
    if settings.run_in_process:
        engine = get_engine()
        await engine.pool.stop()
        await engine.queue.close()


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    supabase = get_supabase()
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "services": {
            "database": "connected" if supabase else "not configured",
            "queue": settings.queue_backend,
            "workers": "in-process" if settings.run_in_process else "external",
        }
    }


# Register Routers
app.include_router(jobs_router)
