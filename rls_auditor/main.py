"""RLS Auditor API - exposure auditing for PostgREST/Supabase backends."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rls_auditor import __version__
from rls_auditor.config import get_settings
from rls_auditor.routers import audits, health

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.api_log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting RLS Auditor API...")
    yield
    logger.info("Shutting down RLS Auditor API...")


app = FastAPI(
    title="RLS Auditor",
    description="Row Level Security exposure auditing for PostgREST/Supabase backends",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(audits.router, prefix="/api", tags=["Audits"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "RLS Auditor",
        "version": __version__,
        "description": "Row Level Security exposure auditing for PostgREST/Supabase backends",
    }
