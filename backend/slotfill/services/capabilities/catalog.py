"""Declarative description of capabilities and the fields they collect."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import CapabilityNotFoundError

DEFAULT_CONFIRMATION_ARG = "confirmed"
DEFAULT_OPTION_PAGE_SIZE = 20

_LABEL_DELIMITERS = ("（", "(", "，", ",", "。", "：", ":")
_DISABLED_INFER_MODES = {"OFF", "NONE", "DISABLED", "MANUAL"}


class InputMode(str, Enum):
    SINGLE_VALUE = "SINGLE_VALUE"
    SELECT_SINGLE = "SELECT_SINGLE"
    SELECT_MULTI = "SELECT_MULTI"


class InferMode(str, Enum):
    AUTO = "AUTO"
    DISABLED = "DISABLED"


class FieldOption(BaseModel):
    """A static choice offered for an enumerated field."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(..., min_length=1)
    label: str = ""
    description: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_label(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            value = data.get("value")
            data["value"] = str(value).strip() if value is not None else ""
            label = data.get("label")
            if label is None or not str(label).strip():
                data["label"] = data["value"]
        return data


class FieldSpec(BaseModel):
    """Definition of a single parameter collected for a capability."""

    name: str = Field(..., min_length=1)
    label: Optional[str] = None
    description: str = ""
    type: str = "string"
    required: bool = False
    input_mode: InputMode = InputMode.SINGLE_VALUE
    ask_mode: str = "AUTO"
    options: List[FieldOption] = Field(default_factory=list)
    option_query_action: Optional[str] = None
    default_value_action: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    infer_mode: InferMode = InferMode.AUTO
    infer_prompt: Optional[str] = None
    option_page_size: int = Field(default=DEFAULT_OPTION_PAGE_SIZE, gt=0)
    default_value: Optional[str] = None

    @field_validator("input_mode", mode="before")
    @classmethod
    def _normalise_input_mode(cls, value: Any) -> Any:
        if value is None:
            return InputMode.SINGLE_VALUE
        text = str(getattr(value, "value", value)).strip().upper()
        if text in {"", "TEXT"}:
            return InputMode.SINGLE_VALUE
        return text

    @field_validator("infer_mode", mode="before")
    @classmethod
    def _normalise_infer_mode(cls, value: Any) -> InferMode:
        if value is None:
            return InferMode.AUTO
        text = str(getattr(value, "value", value)).strip().upper()
        if text in _DISABLED_INFER_MODES:
            return InferMode.DISABLED
        return InferMode.AUTO

    @field_validator("option_query_action", "default_value_action", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @property
    def display_label(self) -> str:
        """Short human label: explicit label, else the description head, else the name."""

        if self.label and self.label.strip():
            return self.label.strip()
        description = self.description.strip()
        if not description:
            return self.name
        cut = len(description)
        for delimiter in _LABEL_DELIMITERS:
            index = description.find(delimiter)
            if 0 < index < cut:
                cut = index
        return description[:cut].strip() or self.name

    @property
    def is_enumerated(self) -> bool:
        return bool(self.options) or self.option_query_action is not None

    @property
    def is_fully_enumerated(self) -> bool:
        return bool(self.options) and self.option_query_action is None

    @property
    def inferable(self) -> bool:
        return self.infer_mode is InferMode.AUTO


class CapabilitySpec(BaseModel):
    """A submittable capability and the ordered fields it needs."""

    tool_name: str = Field(..., min_length=1)
    description: str = ""
    provider_code: Optional[str] = None
    submit_action: str = "submit"
    slot_filling_enabled: bool = True
    confirmation_required: bool = True
    confirmation_arg_name: str = DEFAULT_CONFIRMATION_ARG
    fields: List[FieldSpec] = Field(default_factory=list)

    endpoint_url: Optional[str] = None
    method: str = "POST"
    content_type: str = "application/x-www-form-urlencoded"
    headers: Dict[str, str] = Field(default_factory=dict)
    header_args: Dict[str, str] = Field(default_factory=dict)
    default_form_data: Dict[str, str] = Field(default_factory=dict)
    form_field_names: List[str] = Field(default_factory=list)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @field_validator("confirmation_arg_name", mode="before")
    @classmethod
    def _default_confirmation_arg(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        return text or DEFAULT_CONFIRMATION_ARG

    @field_validator("provider_code", mode="before")
    @classmethod
    def _blank_provider(cls, value: Any) -> Optional[str]:
        text = str(value).strip() if value is not None else ""
        return text or None

    @field_validator("method", mode="before")
    @classmethod
    def _normalise_method(cls, value: Any) -> str:
        text = str(value).strip().upper() if value is not None else ""
        return text or "POST"

    @model_validator(mode="after")
    def _check_fields(self) -> "CapabilitySpec":
        names = [field.name for field in self.fields]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate fields in '{self.tool_name}': {', '.join(duplicates)}")
        known = set(names)
        for field in self.fields:
            unknown = [dep for dep in field.depends_on if dep not in known]
            if unknown:
                raise ValueError(
                    f"field '{field.name}' of '{self.tool_name}' depends on unknown fields: "
                    + ", ".join(unknown)
                )
        if self.confirmation_arg_name in known:
            raise ValueError(
                f"confirmation argument '{self.confirmation_arg_name}' collides with a field name"
            )
        return self

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def field(self, name: str) -> Optional[FieldSpec]:
        for field in self.fields:
            if field.name == name:
                return field
        return None

    @property
    def field_names(self) -> List[str]:
        return [field.name for field in self.fields]

    @property
    def required_fields(self) -> List[FieldSpec]:
        return [field for field in self.fields if field.required]

    def missing_fields(self, slots: Dict[str, str]) -> List[str]:
        """Required field names without a non-blank slot value, in catalog order."""

        return [
            field.name
            for field in self.required_fields
            if not str(slots.get(field.name, "")).strip()
        ]

    def field_labels(self) -> Dict[str, str]:
        return {field.name: field.display_label for field in self.fields}

    # ------------------------------------------------------------------
    # Tool definition
    # ------------------------------------------------------------------
    def input_schema(self) -> Dict[str, Any]:
        """JSON schema of the arguments accepted by the capability."""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for field in self.fields:
            field_schema: Dict[str, Any] = {"type": field.type or "string"}
            if field.description:
                field_schema["description"] = field.description
            if field.options:
                field_schema["enum"] = [option.value for option in field.options]
                field_schema["x-enum-labels"] = [option.label for option in field.options]
            if field.default_value is not None:
                field_schema["default"] = field.default_value
            properties[field.name] = field_schema
            if field.required:
                required.append(field.name)

        if self.confirmation_required:
            properties[self.confirmation_arg_name] = {
                "type": "boolean",
                "description": "Set to true only when the user explicitly confirms submission",
            }

        schema: Dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required
        return schema

    def tool_definition(self) -> Dict[str, Any]:
        return {
            "name": self.tool_name,
            "description": self.description,
            "input_schema": self.input_schema(),
        }


class FieldCatalog:
    """Read-only registry of capabilities keyed by tool name."""

    def __init__(self, capabilities: Iterable[CapabilitySpec] = ()) -> None:
        self._capabilities: Dict[str, CapabilitySpec] = {}
        for capability in capabilities:
            if capability.tool_name in self._capabilities:
                raise ValueError(f"capability '{capability.tool_name}' registered twice")
            self._capabilities[capability.tool_name] = capability

    def get(self, tool_name: str) -> CapabilitySpec:
        try:
            return self._capabilities[tool_name]
        except KeyError:
            raise CapabilityNotFoundError(tool_name) from None

    def find(self, tool_name: str) -> Optional[CapabilitySpec]:
        return self._capabilities.get(tool_name)

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._capabilities

    def __iter__(self) -> Iterator[CapabilitySpec]:
        return iter(self._capabilities.values())

    def __len__(self) -> int:
        return len(self._capabilities)


__all__ = [
    "DEFAULT_CONFIRMATION_ARG",
    "DEFAULT_OPTION_PAGE_SIZE",
    "InputMode",
    "InferMode",
    "FieldOption",
    "FieldSpec",
    "CapabilitySpec",
    "FieldCatalog",
]
