"""Request and response models for the capability endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolDefinition(BaseModel):
    """Tool description handed to the conversational model."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class CapabilityInvokeRequest(BaseModel):
    """Payload for a direct capability invocation."""

    conversation_id: str = Field(..., min_length=1, description="Conversation owning the draft")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Explicit tool arguments")
    user_input: Optional[str] = Field(
        default=None,
        max_length=8000,
        description="Latest user utterance used for extraction and confirmation phrases",
    )
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None


class ChatMessage(BaseModel):
    """A conversation history entry; tool results carry JSON content."""

    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None


class ConversationTurnRequest(BaseModel):
    user_input: Optional[str] = Field(default=None, max_length=8000)
    messages: List[ChatMessage] = Field(default_factory=list)
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None


class ToolCallPayload(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ConversationTurnResponse(BaseModel):
    """Outcome of the resume check for one turn."""

    resumed: bool
    tool_call: Optional[ToolCallPayload] = None
    result: Optional[Dict[str, Any]] = None


class DraftPayload(BaseModel):
    tool_name: str
    conversation_id: str
    status: str
    slots: Dict[str, str] = Field(default_factory=dict)
    missing_fields: List[str] = Field(default_factory=list)
    field_labels: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


__all__ = [
    "CapabilityInvokeRequest",
    "ChatMessage",
    "ConversationTurnRequest",
    "ConversationTurnResponse",
    "DraftPayload",
    "ToolCallPayload",
    "ToolDefinition",
]
