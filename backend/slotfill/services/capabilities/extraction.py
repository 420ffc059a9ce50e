"""Turn a free-text utterance into canonical slot proposals."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog
from prometheus_client import Counter

from ...completion import Completer, CompletionResult
from .aliases import build_alias_table, canonicalize, normalize_alias
from .catalog import CapabilitySpec, FieldSpec
from .exceptions import ExtractionFailure
from .hints import FieldHints

logger = structlog.get_logger(__name__)

EXTRACTION_OUTCOMES = Counter(
    "slotfill_extraction_total",
    "Outcome of slot extraction attempts.",
    labelnames=("outcome",),
)
EXTRACTED_SLOTS = Counter(
    "slotfill_extracted_slots_total",
    "Number of slot values proposed by extraction.",
    labelnames=("source",),
)

DEFAULT_MAX_INPUT_CHARS = 2000

_PAIR_SEGMENT_RE = re.compile(r"[\n\r;；]+")
_PAIR_RE = re.compile(r"^\s*([^:：]{1,40}?)\s*[:：]\s*(.+?)\s*$")

_INSTRUCTIONS = """You extract slot values for a tool call from the user's message and reply with JSON.
Rules:
1. Output exactly one JSON object and nothing else.
2. Only extract information the user stated explicitly; do not guess.
3. Every key must come from the candidate field list.
4. When a field lists options, prefer the option value; otherwise output the closest literal text.
5. If nothing can be extracted, output {}.
"""


class SlotExtractor:
    """Deterministic parsing followed by one bounded completion call.

    Extraction is best effort: any failure yields fewer (possibly zero)
    proposals and never an exception, so the caller simply asks again.
    """

    def __init__(self, completer: Completer, *, max_input_chars: int = DEFAULT_MAX_INPUT_CHARS) -> None:
        self._completer = completer
        self._max_input_chars = max_input_chars

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def extract(
        self,
        capability: CapabilitySpec,
        user_text: Optional[str],
        candidates: Iterable[str],
        *,
        known_slots: Optional[Mapping[str, str]] = None,
        hints: Optional[FieldHints] = None,
    ) -> Dict[str, str]:
        """Return ``{field_name: canonical_value}`` restricted to ``candidates``."""

        try:
            return self._extract(capability, user_text, candidates, known_slots or {}, hints or {})
        except Exception:
            logger.exception("slot_extraction_failed", tool_name=capability.tool_name)
            EXTRACTION_OUTCOMES.labels(outcome="error").inc()
            return {}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _extract(
        self,
        capability: CapabilitySpec,
        user_text: Optional[str],
        candidates: Iterable[str],
        known_slots: Mapping[str, str],
        hints: FieldHints,
    ) -> Dict[str, str]:
        text = (user_text or "").strip()
        fields = self._candidate_fields(capability, candidates)
        if not text or not fields:
            EXTRACTION_OUTCOMES.labels(outcome="skipped").inc()
            return {}

        alias_tables = {
            field.name: build_alias_table(
                hints[field.name].options if field.name in hints else (),
                field.options,
            )
            for field in fields
        }

        extracted = self._parse_deterministic(text, fields, alias_tables)
        if extracted:
            EXTRACTED_SLOTS.labels(source="deterministic").inc(len(extracted))

        remaining = [field for field in fields if field.name not in extracted]
        if not remaining:
            EXTRACTION_OUTCOMES.labels(outcome="deterministic").inc()
            return extracted

        known = {**known_slots, **extracted}
        prompt = self._build_prompt(capability, text[: self._max_input_chars], remaining, known, hints)
        result = self._completer(prompt)
        if not isinstance(result, CompletionResult) or not result.ok:
            error = getattr(result, "error", None)
            logger.warning(
                "slot_extraction_completion_unavailable",
                tool_name=capability.tool_name,
                error=error,
            )
            EXTRACTION_OUTCOMES.labels(outcome="completion_failed").inc()
            return extracted

        try:
            reply = parse_json_object(result.text or "")
        except ExtractionFailure as exc:
            logger.warning(
                "slot_extraction_reply_unparseable",
                tool_name=capability.tool_name,
                error=str(exc),
            )
            EXTRACTION_OUTCOMES.labels(outcome="unparseable").inc()
            return extracted

        proposed = 0
        for field in remaining:
            if field.name not in reply:
                continue
            value = canonicalize(field, _unwrap(reply[field.name]), alias_tables[field.name])
            if value:
                extracted[field.name] = value
                proposed += 1
            else:
                logger.debug(
                    "slot_extraction_value_unresolved",
                    tool_name=capability.tool_name,
                    field_name=field.name,
                )
        ignored = sorted(set(reply) - {field.name for field in remaining})
        if ignored:
            logger.debug("slot_extraction_keys_ignored", tool_name=capability.tool_name, keys=ignored)

        if proposed:
            EXTRACTED_SLOTS.labels(source="completion").inc(proposed)
        EXTRACTION_OUTCOMES.labels(outcome="completed").inc()
        return extracted

    @staticmethod
    def _candidate_fields(capability: CapabilitySpec, candidates: Iterable[str]) -> List[FieldSpec]:
        fields: List[FieldSpec] = []
        seen = set()
        for name in candidates:
            field = capability.field(name)
            if field is None or not field.inferable or name in seen:
                continue
            seen.add(name)
            fields.append(field)
        return fields

    @staticmethod
    def _parse_deterministic(
        text: str,
        fields: Sequence[FieldSpec],
        alias_tables: Mapping[str, Dict[str, str]],
    ) -> Dict[str, str]:
        keys: Dict[str, FieldSpec] = {}
        for field in fields:
            for alias in (normalize_alias(field.name), normalize_alias(field.display_label)):
                if alias:
                    keys.setdefault(alias, field)

        extracted: Dict[str, str] = {}
        for segment in _PAIR_SEGMENT_RE.split(text):
            match = _PAIR_RE.match(segment)
            if not match:
                continue
            field = keys.get(normalize_alias(match.group(1)))
            if field is None or field.name in extracted:
                continue
            value = canonicalize(field, match.group(2), alias_tables[field.name])
            if value:
                extracted[field.name] = value
        if extracted:
            return extracted

        # A bare answer such as "周报" selects an option when exactly one
        # enumerated candidate knows it.
        utterance = normalize_alias(text)
        owners = [field for field in fields if utterance in alias_tables[field.name]]
        if len(owners) == 1:
            field = owners[0]
            extracted[field.name] = alias_tables[field.name][utterance]
        return extracted

    @staticmethod
    def _build_prompt(
        capability: CapabilitySpec,
        text: str,
        fields: Sequence[FieldSpec],
        known_slots: Mapping[str, str],
        hints: FieldHints,
    ) -> str:
        lines = [_INSTRUCTIONS, f"Tool: {capability.tool_name}", "", "Candidate fields:"]
        for field in fields:
            parts = [f"- key={field.name}"]
            if field.description:
                parts.append(f"description={field.description}")
            parts.append(f"input_mode={field.input_mode.value}")
            option_hint = render_options(field, hints)
            if option_hint:
                parts.append(f"options={option_hint}")
            if field.infer_prompt:
                parts.append(f"infer_hint={field.infer_prompt}")
            lines.append("; ".join(parts))
        lines.append("Only use the keys listed above.")
        lines.extend(
            [
                "",
                "User input:",
                text,
                "",
                "Known slots:",
                json.dumps(dict(known_slots), ensure_ascii=False),
                "",
                "Reply with the JSON object only.",
            ]
        )
        return "\n".join(lines)


def render_options(field: FieldSpec, hints: Optional[FieldHints] = None) -> str:
    """Render options as ``label(value)`` pairs, preferring provider options."""

    hint = (hints or {}).get(field.name)
    options = hint.options if hint is not None and hint.options else field.options
    return ", ".join(f"{option.label or option.value}({option.value})" for option in options)


def parse_json_object(raw: str) -> Dict[str, Any]:
    """Parse a single JSON object out of a completion reply."""

    cleaned = raw.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()
    if not cleaned:
        raise ExtractionFailure("empty completion reply")

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start < 0 or end <= start:
            raise ExtractionFailure("no JSON object in completion reply") from None
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise ExtractionFailure(f"invalid JSON object: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ExtractionFailure("completion reply is not a JSON object")
    return parsed


def _unwrap(raw: Any) -> Any:
    if isinstance(raw, dict):
        return _unwrap(raw.get("value"))
    if isinstance(raw, (list, tuple)):
        return [_unwrap(item) for item in raw]
    return raw


__all__ = ["SlotExtractor", "parse_json_object", "render_options", "EXTRACTION_OUTCOMES"]
