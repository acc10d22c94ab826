"""
Personalization Backend - FastAPI Application
Main entry point with all routes configured.
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from personalization_backend.config import settings
from personalization_backend.database import init_db

# Import all API routers
from personalization_backend.api import personalization, journeys

# Import models to ensure they are registered with SQLModel
from personalization_backend.models import Personalization, OrganizationConfig, VisitorJourney

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    await init_db()
    yield
    # Shutdown


app = FastAPI(
    title="Personalization API",
    description="Adaptive page personalization: intent, judged variations, cached delivery",
    version="1.0.0",
    lifespan=lifespan
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include all routers
app.include_router(personalization.router)
app.include_router(journeys.router)  # Behaviour snapshots for intent extraction


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "message": "Personalization API is running",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "capability_provider": settings.CAPABILITY_PROVIDER
    }
