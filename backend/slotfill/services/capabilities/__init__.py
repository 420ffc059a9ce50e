"""Building blocks of the capability slot filling state machine."""

from __future__ import annotations

from .catalog import CapabilitySpec, FieldCatalog, FieldOption, FieldSpec, InferMode, InputMode
from .drafts import Draft, DraftStore, InMemoryDraftStore, RedisDraftStore
from .exceptions import (
    BindingNotFound,
    CapabilityError,
    CapabilityNotFoundError,
    ExtractionFailure,
    InvalidFieldReference,
    InvalidTransitionError,
    ProviderCallFailure,
)
from .extraction import SlotExtractor
from .fsm import ACTIVE_STATUSES, DraftStatus, apply_transition, can_transition
from .hints import FieldHint, FieldHints, OptionItem
from .planner import PlanStep, QuestionPlan, QuestionPlanner
from .providers import InvocationContext, ProviderGateway
from .submission import SubmissionGateway, SubmissionResult

__all__ = [
    "ACTIVE_STATUSES",
    "BindingNotFound",
    "CapabilityError",
    "CapabilityNotFoundError",
    "CapabilitySpec",
    "Draft",
    "DraftStatus",
    "DraftStore",
    "ExtractionFailure",
    "FieldCatalog",
    "FieldHint",
    "FieldHints",
    "FieldOption",
    "FieldSpec",
    "InMemoryDraftStore",
    "InferMode",
    "InputMode",
    "InvalidFieldReference",
    "InvalidTransitionError",
    "InvocationContext",
    "OptionItem",
    "PlanStep",
    "ProviderCallFailure",
    "ProviderGateway",
    "QuestionPlan",
    "QuestionPlanner",
    "RedisDraftStore",
    "SlotExtractor",
    "SubmissionGateway",
    "SubmissionResult",
    "apply_transition",
    "can_transition",
]
