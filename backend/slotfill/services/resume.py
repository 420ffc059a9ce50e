"""Resume an in-progress capability draft at the start of a turn."""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog
from prometheus_client import Counter

from .capabilities.catalog import CapabilitySpec
from .capabilities.drafts import Draft
from .capabilities.exceptions import BindingNotFound
from .capabilities.fsm import DraftStatus
from .capabilities.planner import is_confirmation_text
from .capabilities.providers import HintResolution, InvocationContext
from .capability_service import AWAITING_CONFIRMATION, STATUS_SLOT_MISSING, CapabilityService

logger = structlog.get_logger(__name__)

_ACTIVE_RESULT_STATUSES = {
    STATUS_SLOT_MISSING,
    DraftStatus.COLLECTING.value,
    DraftStatus.WAIT_CONFIRM.value,
    DraftStatus.SUBMIT_FAILED.value,
}

RESUMED_TURNS = Counter(
    "slotfill_resumed_turns_total",
    "Turns handled by resuming an active draft.",
    labelnames=("outcome",),
)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    # Provider hints fetched while resuming, handed on to the invocation.
    resolution: Optional[HintResolution] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}


@dataclass
class TurnResult:
    resumed: bool
    tool_call: Optional[ToolCall] = None
    result: Optional[Dict[str, Any]] = None


class ResumeCoordinator:
    """Routes a turn straight back into the capability a draft belongs to.

    When several drafts are active, the one referenced by the most recent
    tool result in the history wins; otherwise the oldest active draft is used.
    """

    def __init__(self, service: CapabilityService) -> None:
        self._service = service

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def resume(
        self,
        conversation_id: str,
        messages: Iterable[Mapping[str, Any]] = (),
        user_input: Optional[str] = None,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[ToolCall]:
        """Return the synthesized tool call for this turn, if a draft is active."""

        history = list(messages)
        draft = self.select_draft(conversation_id, history)
        if draft is None:
            return None
        capability = self._service.catalog.get(draft.tool_name)

        text = user_input if user_input is not None else _latest_user_text(history)
        arguments: Dict[str, Any] = dict(draft.slots)
        resolution: Optional[HintResolution] = None
        confirming = draft.status in AWAITING_CONFIRMATION and is_confirmation_text(text)
        if confirming:
            arguments[capability.confirmation_arg_name] = True
        elif text:
            extracted, resolution = self._extract(
                capability, draft, text, InvocationContext.build(tenant_id, user_id)
            )
            arguments.update(extracted)

        call = ToolCall(
            id=f"{capability.tool_name}_resume_{uuid.uuid4().hex[:8]}",
            name=capability.tool_name,
            arguments=arguments,
            resolution=resolution,
        )
        logger.info(
            "capability_draft_resumed",
            conversation_id=conversation_id,
            tool_name=capability.tool_name,
            draft_status=draft.status.value,
            confirming=capability.confirmation_arg_name in arguments,
        )
        return call

    def handle_turn(
        self,
        conversation_id: str,
        messages: Iterable[Mapping[str, Any]] = (),
        user_input: Optional[str] = None,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TurnResult:
        """Resume and execute the pending capability, if there is one."""

        try:
            call = self.resume(
                conversation_id, messages, user_input, tenant_id=tenant_id, user_id=user_id
            )
        except Exception:
            logger.exception("capability_resume_failed", conversation_id=conversation_id)
            RESUMED_TURNS.labels(outcome="error").inc()
            return TurnResult(resumed=False)

        if call is None:
            RESUMED_TURNS.labels(outcome="idle").inc()
            return TurnResult(resumed=False)

        result = self._service.invoke(
            call.name,
            conversation_id,
            call.arguments,
            tenant_id=tenant_id,
            user_id=user_id,
            resolution=call.resolution,
        )
        RESUMED_TURNS.labels(outcome="resumed").inc()
        return TurnResult(resumed=True, tool_call=call, result=result)

    def select_draft(
        self, conversation_id: str, messages: List[Mapping[str, Any]]
    ) -> Optional[Draft]:
        active = [
            draft
            for draft in self._service.list_drafts(conversation_id)
            if draft.is_active and draft.tool_name in self._service.catalog
        ]
        if len(active) <= 1:
            return active[0] if active else None

        by_tool = {draft.tool_name: draft for draft in active}
        referenced = _latest_referenced_tool(messages, by_tool.keys())
        if referenced is not None:
            return by_tool[referenced]
        return active[0]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _extract(
        self,
        capability: CapabilitySpec,
        draft: Draft,
        text: str,
        context: InvocationContext,
    ) -> Tuple[Dict[str, str], Optional[HintResolution]]:
        """Extract values from ``text`` and return them with the hints used.

        The resolution is ``None`` when providers were not consulted, so the
        invocation that follows resolves hints itself.
        """

        missing = capability.missing_fields(draft.slots)
        pool = missing or capability.field_names
        candidates = [name for name in pool if capability.field(name).inferable]
        if not candidates:
            return {}, None

        resolution: Optional[HintResolution] = None
        try:
            resolution = self._service.resolve_hints(capability, draft.slots, missing, context)
        except BindingNotFound as exc:
            # The invocation that follows reports the missing binding.
            logger.info(
                "capability_resume_hints_skipped",
                tool_name=capability.tool_name,
                provider_code=exc.provider_code,
            )
        known = dict(draft.slots)
        hints = {}
        if resolution is not None:
            known.update(resolution.defaulted)
            hints = resolution.hints
            candidates = [name for name in candidates if name not in resolution.defaulted]
        if not candidates:
            return {}, resolution
        extracted = self._service.extractor.extract(
            capability, text, candidates, known_slots=known, hints=hints
        )
        return extracted, resolution


def _latest_user_text(messages: List[Mapping[str, Any]]) -> Optional[str]:
    for message in reversed(messages):
        if str(message.get("role", "")).lower() == "user":
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
    return None


def _latest_referenced_tool(
    messages: List[Mapping[str, Any]], tool_names: Iterable[str]
) -> Optional[str]:
    candidates = set(tool_names)
    for message in reversed(messages):
        if str(message.get("role", "")).lower() != "tool":
            continue
        payload = _tool_payload(message.get("content"))
        if payload is None or payload.get("status") not in _ACTIVE_RESULT_STATUSES:
            continue
        tool_name = payload.get("tool_name") or message.get("name")
        if tool_name in candidates:
            return tool_name
    return None


def _tool_payload(content: Any) -> Optional[Dict[str, Any]]:
    if isinstance(content, dict):
        return content
    if not isinstance(content, str):
        return None
    try:
        parsed = json.loads(content)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


__all__ = ["ResumeCoordinator", "ToolCall", "TurnResult"]
