"""Provider diagnostic API endpoints."""

from typing import Dict

from fastapi import APIRouter, Depends

from llm_router.orchestrator import CompletionOrchestrator, get_orchestrator
from llm_router.schemas import (
    ProviderListResponse,
    ProviderStatusResponse,
    ProviderTestResponse,
)

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("", response_model=ProviderListResponse)
async def list_providers(
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
):
    """List registered providers and the routing settings in effect."""
    return ProviderListResponse(**orchestrator.debug_config())


@router.get("/status", response_model=Dict[str, ProviderStatusResponse])
async def get_provider_status(
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
):
    """Get availability and cooldown state for every provider."""
    return await orchestrator.get_provider_status()


@router.post("/test", response_model=Dict[str, ProviderTestResponse])
async def test_providers(
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
):
    """Run a live connection test against every provider.

    This spends one real request per provider.
    """
    return await orchestrator.test_all_providers()
