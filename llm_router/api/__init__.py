"""API router package for the LLM router."""

from fastapi import APIRouter
from .providers import router as providers_router

# Create main API router
api_router = APIRouter(prefix="/api")

# Include sub-routers
api_router.include_router(providers_router)
