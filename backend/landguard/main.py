"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from landguard.api import verification
from landguard.config import CORS_ORIGINS, LOG_LEVEL, GEMINI_ENABLED, GEMINI_MODEL
from landguard.pipeline.orchestrator import cleanup_stale_files

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: remove stale sessions and orphaned videos on startup."""
    cleanup_stale_files()
    if GEMINI_ENABLED:
        logger.info(f"Inference model: {GEMINI_MODEL}")
    else:
        logger.warning("GEMINI_API_KEY not set — verification stages are unavailable")
    yield


app = FastAPI(
    title="LandGuard Verification",
    description="Seller land listing verification: identity, land records, location, site video",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(verification.router, prefix="/api/verify", tags=["Verification"])


@app.get("/api/health")
async def health():
    return {"status": "operational", "platform": "LandGuard Verification"}
