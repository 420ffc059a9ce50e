"""Business service driving one capability call across conversation turns."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog
from opentelemetry import trace
from prometheus_client import Counter

from ..completion import Completer, OpenAICompleter, unavailable_completer
from ..config import Settings
from .capabilities.aliases import build_alias_table, canonicalize, stringify_value
from .capabilities.catalog import CapabilitySpec, FieldCatalog
from .capabilities.drafts import Draft, DraftStore, InMemoryDraftStore, RedisDraftStore
from .capabilities.exceptions import BIND_NOT_FOUND, BindingNotFound, CapabilityNotFoundError
from .capabilities.extraction import SlotExtractor
from .capabilities.fsm import DraftStatus, apply_transition
from .capabilities.hints import FieldHints
from .capabilities.loader import CatalogDocument, load_document
from .capabilities.planner import PlanStep, QuestionPlan, QuestionPlanner, is_confirmation_text, is_confirmed
from .capabilities.providers import HintResolution, InvocationContext, ProviderClient, ProviderGateway
from .capabilities.submission import SubmissionGateway, SubmissionResult

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

STATUS_SLOT_MISSING = "SLOT_MISSING"
STATUS_WAIT_CONFIRM = DraftStatus.WAIT_CONFIRM.value
STATUS_SUBMITTED = DraftStatus.SUBMITTED.value
STATUS_SUBMIT_FAILED = DraftStatus.SUBMIT_FAILED.value
STATUS_BINDING_REQUIRED = "BINDING_REQUIRED"
STATUS_ERROR = "ERROR"

_SUBMIT_FAILURE_MESSAGES = {
    BIND_NOT_FOUND: "Your account is not linked to the external system. Please bind it and try again.",
}
_DEFAULT_SUBMIT_FAILURE = "Submission failed. Please check the details or the upstream system status."

# Statuses in which an affirmative phrase confirms the pending draft.
AWAITING_CONFIRMATION = frozenset({DraftStatus.WAIT_CONFIRM, DraftStatus.SUBMIT_FAILED})

INVOCATIONS = Counter(
    "slotfill_invocations_total",
    "Capability invocations grouped by resulting status.",
    labelnames=("tool_name", "status"),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _merge_resolution(
    slots: Dict[str, str], hints: FieldHints, resolution: HintResolution, missing: List[str]
) -> None:
    # Only fields still missing take defaults or hints; explicit values win.
    open_fields = set(missing)
    slots.update({name: value for name, value in resolution.defaulted.items() if name in open_fields})
    hints.update({name: hint for name, hint in resolution.hints.items() if name in open_fields})


class CapabilityService:
    """Merge, plan, confirm and submit one capability per conversation."""

    def __init__(
        self,
        catalog: FieldCatalog,
        drafts: DraftStore,
        extractor: SlotExtractor,
        submission: SubmissionGateway,
        providers: Optional[ProviderGateway] = None,
        planner: Optional[QuestionPlanner] = None,
    ) -> None:
        self._catalog = catalog
        self._drafts = drafts
        self._extractor = extractor
        self._submission = submission
        self._providers = providers
        self._planner = planner or QuestionPlanner()

    @property
    def catalog(self) -> FieldCatalog:
        return self._catalog

    @property
    def drafts(self) -> DraftStore:
        return self._drafts

    @property
    def extractor(self) -> SlotExtractor:
        return self._extractor

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def tool_definitions(self) -> List[Dict[str, Any]]:
        return [capability.tool_definition() for capability in self._catalog]

    def list_drafts(self, conversation_id: str) -> List[Draft]:
        return self._drafts.list_for_conversation(conversation_id)

    def invoke(
        self,
        tool_name: str,
        conversation_id: str,
        arguments: Optional[Mapping[str, Any]] = None,
        *,
        user_input: Optional[str] = None,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        resolution: Optional[HintResolution] = None,
    ) -> Dict[str, Any]:
        """Run one turn for ``tool_name`` and return the structured response.

        Never raises: unknown tools, missing bindings and unexpected errors
        are all reported through the ``status`` of the returned payload.
        A ``resolution`` already fetched for this turn replaces the first
        provider round trip.
        """

        capability = self._catalog.find(tool_name)
        if capability is None:
            INVOCATIONS.labels(tool_name=tool_name, status=STATUS_ERROR).inc()
            return {
                "status": STATUS_ERROR,
                "tool_name": tool_name,
                "error_code": "CAPABILITY_NOT_FOUND",
                "message": str(CapabilityNotFoundError(tool_name)),
            }

        context = InvocationContext.build(tenant_id, user_id)
        with tracer.start_as_current_span("capability.invoke") as span:
            span.set_attribute("capability.tool_name", tool_name)
            span.set_attribute("conversation.id", conversation_id)
            try:
                response = self._invoke(
                    capability, conversation_id, dict(arguments or {}), user_input, context, resolution
                )
            except BindingNotFound as exc:
                logger.warning(
                    "capability_binding_missing",
                    tool_name=tool_name,
                    conversation_id=conversation_id,
                    provider_code=exc.provider_code,
                )
                response = {
                    "status": STATUS_BINDING_REQUIRED,
                    "tool_name": tool_name,
                    "error_code": BIND_NOT_FOUND,
                    "provider_code": exc.provider_code,
                    "message": _SUBMIT_FAILURE_MESSAGES[BIND_NOT_FOUND],
                }
            except Exception as exc:
                logger.exception("capability_invocation_failed", tool_name=tool_name, conversation_id=conversation_id)
                span.record_exception(exc)
                response = {
                    "status": STATUS_ERROR,
                    "tool_name": tool_name,
                    "message": "The request could not be processed. Please try again later.",
                }
            span.set_attribute("capability.status", response["status"])

        INVOCATIONS.labels(tool_name=tool_name, status=response["status"]).inc()
        return response

    def resolve_hints(
        self,
        capability: CapabilitySpec,
        slots: Mapping[str, str],
        missing_fields: List[str],
        context: InvocationContext,
    ) -> HintResolution:
        if self._providers is None or not missing_fields:
            return HintResolution()
        return self._providers.resolve_hints(capability, slots, missing_fields, context)

    def normalize_arguments(self, capability: CapabilitySpec, arguments: Mapping[str, Any]) -> Dict[str, str]:
        """Keep catalog fields and pagination cursors, canonicalising option values."""

        normalized: Dict[str, str] = {}
        cursor_keys = {
            key
            for spec in capability.fields
            for key in (f"{spec.name}_cursor", f"cursor_{spec.name}")
        }
        for key, raw in arguments.items():
            if key == capability.confirmation_arg_name:
                continue
            spec = capability.field(key)
            if spec is not None:
                value = canonicalize(spec, raw, build_alias_table(spec.options))
                if value:
                    normalized[key] = value
                elif stringify_value(raw):
                    logger.info(
                        "capability_argument_rejected",
                        tool_name=capability.tool_name,
                        field_name=key,
                    )
            elif key in cursor_keys:
                value = stringify_value(raw)
                if value:
                    normalized[key] = value
            else:
                logger.debug("capability_argument_ignored", tool_name=capability.tool_name, argument=key)
        return normalized

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _invoke(
        self,
        capability: CapabilitySpec,
        conversation_id: str,
        arguments: Dict[str, Any],
        user_input: Optional[str],
        context: InvocationContext,
        resolution: Optional[HintResolution] = None,
    ) -> Dict[str, Any]:
        tracked = capability.slot_filling_enabled or capability.confirmation_required
        draft = self._drafts.get(conversation_id, capability.tool_name) if tracked else None
        if draft is None:
            draft = Draft(tool_name=capability.tool_name, conversation_id=conversation_id)
        previous_status = draft.status

        slots = dict(draft.slots)
        slots.update(self.normalize_arguments(capability, arguments))

        confirmed = is_confirmed(arguments.get(capability.confirmation_arg_name))
        # While collecting, the same words may be option labels.
        text_confirmation = previous_status in AWAITING_CONFIRMATION and is_confirmation_text(user_input)
        if text_confirmation:
            confirmed = True

        hints: FieldHints = {}
        inferred: Dict[str, str] = {}
        result: Optional[SubmissionResult] = None
        try:
            if capability.slot_filling_enabled:
                inferred = self._fill_slots(
                    capability,
                    slots,
                    hints,
                    None if text_confirmation else user_input,
                    context,
                    resolution,
                )
            plan = self._planner.plan(capability, slots, confirmed=confirmed)
            if plan.step is PlanStep.SUBMIT:
                result = self._submission.submit(capability, slots, context)
        except BindingNotFound:
            if tracked:
                self._save(draft, capability, slots, previous_status)
            raise

        if plan.step is PlanStep.COLLECT:
            self._save(draft, capability, slots, apply_transition(previous_status, DraftStatus.COLLECTING))
            return self._slot_missing_response(capability, plan, slots, inferred, hints)

        if plan.step is PlanStep.CONFIRM:
            self._save(draft, capability, slots, apply_transition(previous_status, DraftStatus.WAIT_CONFIRM))
            return self._confirm_response(capability, plan, inferred)

        if result.success:
            apply_transition(previous_status, DraftStatus.SUBMITTED)
            self._drafts.delete(conversation_id, capability.tool_name)
        elif tracked:
            self._save(draft, capability, slots, apply_transition(previous_status, DraftStatus.SUBMIT_FAILED))
        return self._submit_response(capability, plan, result)

    def _fill_slots(
        self,
        capability: CapabilitySpec,
        slots: Dict[str, str],
        hints: FieldHints,
        user_input: Optional[str],
        context: InvocationContext,
        resolution: Optional[HintResolution] = None,
    ) -> Dict[str, str]:
        """Apply provider defaults and extraction to ``slots`` in place."""

        missing = capability.missing_fields(slots)
        if resolution is None:
            resolution = self.resolve_hints(capability, slots, missing, context)
        _merge_resolution(slots, hints, resolution, missing)

        inferred: Dict[str, str] = {}
        missing = capability.missing_fields(slots)
        if missing and user_input and user_input.strip():
            candidates = [name for name in missing if capability.field(name).inferable]
            inferred = self._extractor.extract(
                capability, user_input, candidates, known_slots=slots, hints=hints
            )
            slots.update(inferred)
            missing = capability.missing_fields(slots)
            if inferred and missing:
                # Newly inferred values may unlock dependent option queries.
                resolution = self.resolve_hints(capability, slots, missing, context)
                _merge_resolution(slots, hints, resolution, missing)
        return inferred

    def _save(
        self,
        draft: Draft,
        capability: CapabilitySpec,
        slots: Dict[str, str],
        status: DraftStatus,
    ) -> None:
        missing = capability.missing_fields(slots) if capability.slot_filling_enabled else []
        labels = capability.field_labels()
        draft.slots = dict(slots)
        draft.status = status
        draft.missing_fields = missing
        draft.field_labels = {name: labels[name] for name in missing}
        draft.updated_at = _utcnow()
        self._drafts.save(draft)

    @staticmethod
    def _collected(capability: CapabilitySpec, slots: Mapping[str, str]) -> Dict[str, str]:
        return {name: slots[name] for name in capability.field_names if name in slots}

    def _slot_missing_response(
        self,
        capability: CapabilitySpec,
        plan: QuestionPlan,
        slots: Mapping[str, str],
        inferred: Dict[str, str],
        hints: FieldHints,
    ) -> Dict[str, Any]:
        labels = capability.field_labels()
        response: Dict[str, Any] = {
            "status": STATUS_SLOT_MISSING,
            "tool_name": capability.tool_name,
            "missing_fields": list(plan.missing_fields),
            "missing_field_labels": {name: labels[name] for name in plan.missing_fields},
            "missing_field_descriptions": {
                name: capability.field(name).description for name in plan.missing_fields
            },
            "collected_slots": self._collected(capability, slots),
        }
        if inferred:
            response["inferred_slots"] = dict(inferred)
        if hints:
            response["field_hints"] = {name: hint.to_dict() for name, hint in hints.items()}
        response["question_plan"] = self._planner.describe(plan, capability, hints)
        response["message"] = self._planner.collect_message(plan, capability, hints)
        return response

    def _confirm_response(
        self,
        capability: CapabilitySpec,
        plan: QuestionPlan,
        inferred: Dict[str, str],
    ) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "status": STATUS_WAIT_CONFIRM,
            "tool_name": capability.tool_name,
            "confirmation_required": True,
            "confirmation_arg_name": plan.confirmation_arg_name,
            "preview": dict(plan.preview),
        }
        if inferred:
            response["inferred_slots"] = dict(inferred)
        response["question_plan"] = self._planner.describe(plan, capability)
        response["message"] = self._planner.confirm_message(plan)
        return response

    @staticmethod
    def _submit_response(
        capability: CapabilitySpec,
        plan: QuestionPlan,
        result: SubmissionResult,
    ) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "status": STATUS_SUBMITTED if result.success else STATUS_SUBMIT_FAILED,
            "tool_name": capability.tool_name,
            "success": result.success,
            "http_status": result.http_status,
            "response": result.response,
            "collected_slots": dict(plan.preview),
        }
        if not result.success:
            if result.error_code:
                response["error_code"] = result.error_code
            response["message"] = _SUBMIT_FAILURE_MESSAGES.get(result.error_code or "", _DEFAULT_SUBMIT_FAILURE)
        return response


def build_capability_service(
    settings: Settings,
    *,
    document: Optional[CatalogDocument] = None,
    drafts: Optional[DraftStore] = None,
    completer: Optional[Completer] = None,
    http_client: Optional[httpx.Client] = None,
) -> CapabilityService:
    """Wire a :class:`CapabilityService` from runtime settings."""

    if document is None:
        document = load_document(settings.catalog_path) if settings.catalog_path else CatalogDocument()

    if drafts is None:
        if settings.draft_backend == "redis":
            drafts = RedisDraftStore(ttl_seconds=settings.draft_ttl_seconds)
        else:
            drafts = InMemoryDraftStore()

    if completer is None:
        if settings.openai_api_key:
            completer = OpenAICompleter(api_key=settings.openai_api_key, model=settings.openai_model)
        else:
            logger.warning("completion_backend_not_configured")
            completer = unavailable_completer

    http_client = http_client or httpx.Client(timeout=settings.provider_timeout_seconds)
    providers = ProviderGateway(
        ProviderClient(document.provider_registry(), document.binding_store(), http_client)
    )
    return CapabilityService(
        catalog=document.catalog(),
        drafts=drafts,
        extractor=SlotExtractor(completer, max_input_chars=settings.extraction_max_input_chars),
        submission=SubmissionGateway(
            providers, http_client, default_timeout=settings.provider_timeout_seconds
        ),
        providers=providers,
    )


__all__ = [
    "AWAITING_CONFIRMATION",
    "CapabilityService",
    "build_capability_service",
    "STATUS_SLOT_MISSING",
    "STATUS_WAIT_CONFIRM",
    "STATUS_SUBMITTED",
    "STATUS_SUBMIT_FAILED",
    "STATUS_BINDING_REQUIRED",
    "STATUS_ERROR",
]
