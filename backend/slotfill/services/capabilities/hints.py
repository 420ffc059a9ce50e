"""Value objects describing provider-resolved options and defaults."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .catalog import InputMode


@dataclass(frozen=True)
class OptionItem:
    """A selectable value returned by an option provider."""

    label: str
    value: str
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"label": self.label, "value": self.value}
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload


@dataclass
class FieldHint:
    """What the providers told us about one missing field this turn."""

    field_name: str
    input_mode: InputMode = InputMode.SINGLE_VALUE
    options: List[OptionItem] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    depends_on: List[str] = field(default_factory=list)
    default_value: Optional[str] = None
    default_applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "input_mode": self.input_mode.value,
            "options": [option.to_dict() for option in self.options],
            "has_more": self.has_more,
            "depends_on": list(self.depends_on),
            "default_applied": self.default_applied,
        }
        if self.next_cursor is not None:
            payload["next_cursor"] = self.next_cursor
        if self.default_value is not None:
            payload["default_value"] = self.default_value
        return payload


FieldHints = Dict[str, FieldHint]


__all__ = ["OptionItem", "FieldHint", "FieldHints"]
