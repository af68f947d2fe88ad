"""Pydantic schemas for completion requests and diagnostic responses."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


# ============================================================================
# Completion Request Schemas
# ============================================================================

class ChatMessage(BaseModel):
    """A single conversation message."""
    role: Literal["system", "user", "assistant"]
    content: str

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        """Reject messages with no text."""
        if not v.strip():
            raise ValueError("Message content must not be empty")
        return v


class CompletionOptions(BaseModel):
    """Per-request generation overrides."""
    max_tokens: Optional[int] = Field(None, gt=0)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    model: Optional[str] = None
    timeout_ms: Optional[int] = Field(None, gt=0)


class ConversationContext(BaseModel):
    """Caller-supplied context for a conversation.

    Only ``system_prompt`` is read by providers; the remaining fields travel
    with the request for logging.
    """
    system_prompt: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Diagnostic Schemas
# ============================================================================

class ProviderStatusResponse(BaseModel):
    """Health and availability of one provider."""
    available: bool
    cooldown_active: bool
    cooldown_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    failure_count: int = 0
    model: Optional[str] = None


class ProviderTestResponse(BaseModel):
    """Result of a live connection test against one provider."""
    success: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None


class ProviderListResponse(BaseModel):
    """Registered providers and routing settings."""
    providers: List[str]
    priority: List[str]
    fallback_enabled: bool
    max_failures_before_cooldown: int
    cooldown_ms: int
