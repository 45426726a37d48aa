"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from postmortem_kg.api.health import router as health_router
from postmortem_kg.api.postmortems import router as postmortems_router
from postmortem_kg.api.recommendations import router as recommendations_router
from postmortem_kg.config import settings
from postmortem_kg.db.database import init_db
from postmortem_kg.log import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_db()
    yield


app = FastAPI(
    title=settings.APP_NAME,
    description="AI-assisted postmortems and similar-incident recommendations",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for now, restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(postmortems_router)
app.include_router(recommendations_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic application info."""
    return {
        "name": settings.APP_NAME,
        "version": "0.1.0",
        "docs": "/docs",
    }
