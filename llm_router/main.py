"""FastAPI application exposing the provider diagnostics."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import api_router
from .orchestrator import get_orchestrator, reset_orchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = get_orchestrator()
    logger.info(f"Registered providers: {orchestrator.list_providers()}")
    yield
    await orchestrator.close()
    reset_orchestrator()


app = FastAPI(title="LLM Router", lifespan=lifespan)
app.include_router(api_router)


@app.get("/health")
async def health():
    """Liveness check for the service itself."""
    return {"status": "ok"}
