"""Decide the next conversational step for a capability draft."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .aliases import normalize_alias
from .catalog import CapabilitySpec, FieldSpec
from .hints import FieldHints

STRATEGY = "CONFIG_DRIVEN_SLOT_FILLING"

CONFIRMATION_PHRASES = frozenset(
    {"确认", "确认提交", "提交", "是", "yes", "ok", "好的", "confirm", "submit"}
)
_CONFIRMATION_FLAGS = frozenset({"true", "1", "yes", "y", "confirm", "confirmed", "确认", "执行"})
_MAX_FOLLOW_UPS = 3


class PlanStep(str, Enum):
    COLLECT = "COLLECT"
    CONFIRM = "CONFIRM"
    SUBMIT = "SUBMIT"


def is_confirmed(flag: Any) -> bool:
    """Interpret the structured confirmation argument."""

    if isinstance(flag, bool):
        return flag
    if isinstance(flag, (int, float)):
        return flag == 1
    if flag is None:
        return False
    return normalize_alias(flag) in _CONFIRMATION_FLAGS


def is_confirmation_text(text: Optional[str]) -> bool:
    """Whether a whole utterance is one of the affirmative phrases."""

    return normalize_alias(text) in CONFIRMATION_PHRASES


@dataclass
class QuestionPlan:
    step: PlanStep
    tool_name: str
    missing_fields: List[str] = field(default_factory=list)
    preview: Dict[str, str] = field(default_factory=dict)
    confirmation_arg_name: str = "confirmed"

    @property
    def next_field(self) -> Optional[str]:
        return self.missing_fields[0] if self.missing_fields else None


class QuestionPlanner:
    """Maps merged slots to COLLECT, CONFIRM or SUBMIT.

    Missing fields are always surfaced in catalog declaration order, so the
    same inputs produce the same questions.
    """

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def plan(
        self,
        capability: CapabilitySpec,
        slots: Mapping[str, str],
        *,
        confirmed: bool,
    ) -> QuestionPlan:
        missing = capability.missing_fields(dict(slots)) if capability.slot_filling_enabled else []
        preview = {name: slots[name] for name in capability.field_names if name in slots}
        if missing:
            step = PlanStep.COLLECT
        elif capability.confirmation_required and not confirmed:
            step = PlanStep.CONFIRM
        else:
            step = PlanStep.SUBMIT
        return QuestionPlan(
            step=step,
            tool_name=capability.tool_name,
            missing_fields=missing,
            preview=preview,
            confirmation_arg_name=capability.confirmation_arg_name,
        )

    def describe(
        self,
        plan: QuestionPlan,
        capability: CapabilitySpec,
        hints: Optional[FieldHints] = None,
    ) -> Dict[str, Any]:
        """Serialisable ``question_plan`` payload for ``plan``."""

        payload: Dict[str, Any] = {
            "strategy": STRATEGY,
            "step": plan.step.value,
            "tool_name": plan.tool_name,
        }
        if plan.step is PlanStep.COLLECT:
            fields = [
                self._describe_field(capability.field(name), name, capability, hints)
                for name in plan.missing_fields
            ]
            payload.update(
                missing_count=len(plan.missing_fields),
                missing_fields=list(plan.missing_fields),
                ask_queue=list(plan.missing_fields),
                collected_slots=dict(plan.preview),
                fields=fields,
                next_field=fields[0] if fields else None,
            )
        elif plan.step is PlanStep.CONFIRM:
            labels = capability.field_labels()
            payload.update(
                confirmation_arg_name=plan.confirmation_arg_name,
                preview=dict(plan.preview),
                fields=[
                    {"name": name, "label": labels.get(name, name), "value": value}
                    for name, value in plan.preview.items()
                ],
            )
        return payload

    def collect_message(
        self,
        plan: QuestionPlan,
        capability: CapabilitySpec,
        hints: Optional[FieldHints] = None,
    ) -> str:
        next_name = plan.next_field
        if next_name is None:
            return "Please provide the remaining required information."
        spec = capability.field(next_name)
        label = spec.display_label if spec is not None else next_name
        message = f"Please provide {label}"
        if spec is not None and spec.description and spec.description != label:
            message += f" ({spec.description})"
        options = plan_options(spec, hints) if spec is not None else []
        if options:
            message += ". Options: " + ", ".join(
                f"{option['label']}({option['value']})" for option in options
            )
        follow_ups = plan.missing_fields[1:]
        if follow_ups:
            labels = capability.field_labels()
            shown = [labels.get(name, name) for name in follow_ups[:_MAX_FOLLOW_UPS]]
            message += ". Still needed afterwards: " + ", ".join(shown)
            if len(follow_ups) > _MAX_FOLLOW_UPS:
                message += " and more"
        message += '. You can also answer several fields at once as "field: value" lines.'
        return message

    @staticmethod
    def confirm_message(plan: QuestionPlan) -> str:
        return 'All required information is collected. Please review it and reply "confirm" to submit.'

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _describe_field(
        spec: Optional[FieldSpec],
        name: str,
        capability: CapabilitySpec,
        hints: Optional[FieldHints],
    ) -> Dict[str, Any]:
        if spec is None:
            return {"name": name, "label": name, "required": True}
        hint = (hints or {}).get(name)
        described: Dict[str, Any] = {
            "name": name,
            "label": spec.display_label,
            "required": spec.required,
            "description": spec.description,
            "input_mode": spec.input_mode.value,
            "ask_mode": spec.ask_mode,
            "infer_mode": spec.infer_mode.value,
            "depends_on": list(spec.depends_on),
            "auto_fill_action": spec.default_value_action,
            "options": plan_options(spec, hints),
        }
        if spec.infer_prompt:
            described["infer_prompt"] = spec.infer_prompt
        if hint is not None:
            described["has_more"] = hint.has_more
            if hint.next_cursor is not None:
                described["next_cursor"] = hint.next_cursor
        if spec.default_value is not None:
            described["default_value"] = spec.default_value
        return described


def plan_options(spec: FieldSpec, hints: Optional[FieldHints] = None) -> List[Dict[str, Any]]:
    """Options to offer for ``spec``: fresh provider options, else static ones."""

    hint = (hints or {}).get(spec.name)
    if hint is not None and hint.options:
        return [option.to_dict() for option in hint.options]
    options: List[Dict[str, Any]] = []
    for option in spec.options:
        item: Dict[str, Any] = {"label": option.label, "value": option.value}
        if option.description:
            item["description"] = option.description
        options.append(item)
    return options


__all__ = [
    "CONFIRMATION_PHRASES",
    "PlanStep",
    "QuestionPlan",
    "QuestionPlanner",
    "is_confirmation_text",
    "is_confirmed",
    "plan_options",
]
