"""FastAPI router exposing capability invocation and turn resumption."""
from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from ..config import get_settings
from ..schemas.capabilities import (
    CapabilityInvokeRequest,
    ConversationTurnRequest,
    ConversationTurnResponse,
    DraftPayload,
    ToolCallPayload,
    ToolDefinition,
)
from ..services.capability_service import CapabilityService, build_capability_service
from ..services.resume import ResumeCoordinator

router = APIRouter(tags=["capabilities"])


@lru_cache
def get_capability_service() -> CapabilityService:
    """Process-wide service built from the runtime settings."""

    return build_capability_service(get_settings())


def get_resume_coordinator(
    service: CapabilityService = Depends(get_capability_service),
) -> ResumeCoordinator:
    return ResumeCoordinator(service)


@router.get(
    "/capabilities",
    response_model=List[ToolDefinition],
    summary="List invocable capabilities",
)
def list_capabilities(
    service: CapabilityService = Depends(get_capability_service),
) -> List[ToolDefinition]:
    return [ToolDefinition(**definition) for definition in service.tool_definitions()]


@router.post(
    "/capabilities/{tool_name}/invoke",
    response_model=Dict[str, Any],
    summary="Invoke a capability for one conversation turn",
)
def invoke_capability(
    tool_name: str,
    payload: CapabilityInvokeRequest,
    service: CapabilityService = Depends(get_capability_service),
) -> Dict[str, Any]:
    """Merge the arguments into the draft and return the next step."""

    if tool_name not in service.catalog:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Capability '{tool_name}' not found")
    return service.invoke(
        tool_name,
        payload.conversation_id,
        payload.arguments,
        user_input=payload.user_input,
        tenant_id=payload.tenant_id,
        user_id=payload.user_id,
    )


@router.post(
    "/conversations/{conversation_id}/turns",
    response_model=ConversationTurnResponse,
    summary="Resume an active draft for the latest user turn",
)
def handle_turn(
    conversation_id: str,
    payload: ConversationTurnRequest,
    coordinator: ResumeCoordinator = Depends(get_resume_coordinator),
) -> ConversationTurnResponse:
    outcome = coordinator.handle_turn(
        conversation_id,
        [message.model_dump() for message in payload.messages],
        payload.user_input,
        tenant_id=payload.tenant_id,
        user_id=payload.user_id,
    )
    tool_call = None
    if outcome.tool_call is not None:
        tool_call = ToolCallPayload(**outcome.tool_call.to_dict())
    return ConversationTurnResponse(resumed=outcome.resumed, tool_call=tool_call, result=outcome.result)


@router.get(
    "/conversations/{conversation_id}/drafts",
    response_model=List[DraftPayload],
    summary="List the drafts of a conversation",
)
def list_drafts(
    conversation_id: str,
    service: CapabilityService = Depends(get_capability_service),
) -> List[DraftPayload]:
    return [DraftPayload(**draft.to_dict()) for draft in service.list_drafts(conversation_id)]
