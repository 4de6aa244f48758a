"""Canonical request/response models for the AI proxy gateway."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    role: str
    content: str


class CanonicalRequest(BaseModel):
    """Provider-agnostic representation of an inbound AI call."""

    provider: str = Field(..., description="Lower-cased provider name")
    messages: List[ChatMessage]
    user_id: str
    timestamp: Optional[float] = Field(
        default=None, description="Client-supplied timestamp, if any"
    )


class CanonicalResponse(BaseModel):
    """Normalized result of a provider call."""

    provider: str
    text: str
    model: Optional[str] = None
    # Backend-specific token accounting, passed through untouched.
    usage: Dict[str, Any] = Field(default_factory=dict)


class InteractionLogEntry(BaseModel):
    """Append-only record of one completed AI interaction."""

    user_id: str
    type: str = "ai_interaction"
    input: List[ChatMessage]
    output: str
    timestamp: str
    provider: str


class ProxyResponse(BaseModel):
    """Successful response envelope."""

    response: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: str
    waitTime: Optional[int] = None


class ProviderStatus(BaseModel):
    name: str
    configured: bool
    status: str


class HealthResponse(BaseModel):
    status: str
    providers: List[ProviderStatus]
    timestamp: str
