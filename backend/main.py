"""
TriageBot Backend - Main Application Entry Point
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.failure_policy import get_failure_policy
from app.core.langfuse_handler import flush_langfuse
from app.core.logging import logger
from app.api.routes import triage, cases, websocket


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management."""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} in {settings.APP_ENV} mode")
    logger.info(f"Failure policy: {get_failure_policy().describe()}")
    yield
    # Shutdown
    flush_langfuse()
    logger.info("Shutting down...")


app = FastAPI(
    title=settings.APP_NAME,
    description="Maintenance Request Triage and Contractor Coordination",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-Org-Id", "X-User-Id"],
)

app.include_router(triage.router, prefix="/triage", tags=["Triage"])
app.include_router(cases.router, prefix="/cases", tags=["Cases"])
app.include_router(websocket.router, prefix="/ws", tags=["WebSocket"])


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "env": settings.APP_ENV,
        "store": settings.STORE_BACKEND,
    }
