from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from slotfill.services.capabilities.catalog import (
    CapabilitySpec,
    FieldCatalog,
    FieldSpec,
    InferMode,
    InputMode,
)
from slotfill.services.capabilities.exceptions import CapabilityNotFoundError
from slotfill.services.capabilities.loader import load_document


def test_configuration_aliases_are_normalised() -> None:
    text_field = FieldSpec(name="works", input_mode="text", infer_mode="LLM")
    manual_field = FieldSpec(name="cookie", infer_mode="manual")
    off_field = FieldSpec(name="remark", infer_mode="OFF")

    assert text_field.input_mode is InputMode.SINGLE_VALUE
    assert text_field.infer_mode is InferMode.AUTO
    assert manual_field.infer_mode is InferMode.DISABLED
    assert off_field.infer_mode is InferMode.DISABLED


def test_unknown_input_mode_is_rejected() -> None:
    with pytest.raises(ValidationError):
        FieldSpec(name="types", input_mode="CHECKBOX")


def test_display_label_falls_back_to_description_head() -> None:
    assert FieldSpec(name="types", description="汇报类型（日报/周报）").display_label == "汇报类型"
    assert FieldSpec(name="works", description="Work done, free text").display_label == "Work done"
    assert FieldSpec(name="room", label="Meeting room", description="ignored").display_label == "Meeting room"
    assert FieldSpec(name="plain").display_label == "plain"


def test_option_label_defaults_to_value(work_report: CapabilitySpec) -> None:
    spec = FieldSpec(name="send", options=[{"value": 1}, {"label": "Now", "value": "2"}])

    assert [(option.label, option.value) for option in spec.options] == [("1", "1"), ("Now", "2")]
    assert spec.is_fully_enumerated
    assert work_report.field("types").is_fully_enumerated
    assert not work_report.field("works").is_enumerated


def test_missing_fields_follow_catalog_order(work_report: CapabilitySpec) -> None:
    assert work_report.missing_fields({}) == ["types", "works"]
    assert work_report.missing_fields({"works": "done", "types": " "}) == ["types"]
    assert work_report.missing_fields({"works": "done", "types": "2"}) == []


def test_capability_rejects_inconsistent_fields() -> None:
    with pytest.raises(ValidationError):
        CapabilitySpec(tool_name="dup", fields=[{"name": "a"}, {"name": "a"}])
    with pytest.raises(ValidationError):
        CapabilitySpec(tool_name="deps", fields=[{"name": "a", "depends_on": ["missing"]}])
    with pytest.raises(ValidationError):
        CapabilitySpec(tool_name="clash", fields=[{"name": "confirmed"}])


def test_blank_confirmation_arg_uses_default() -> None:
    capability = CapabilitySpec(tool_name="t", confirmation_arg_name="  ")

    assert capability.confirmation_arg_name == "confirmed"


def test_input_schema_lists_enums_and_confirmation(work_report: CapabilitySpec) -> None:
    schema = work_report.input_schema()

    assert schema["required"] == ["types", "works"]
    assert schema["properties"]["types"]["enum"] == ["1", "2", "3"]
    assert schema["properties"]["types"]["x-enum-labels"] == ["日报", "周报", "月报"]
    assert schema["properties"]["confirmed"]["type"] == "boolean"
    assert work_report.tool_definition()["name"] == "submit_work_report"


def test_catalog_lookup(work_report: CapabilitySpec) -> None:
    catalog = FieldCatalog([work_report])

    assert "submit_work_report" in catalog
    assert catalog.get("submit_work_report") is work_report
    assert catalog.find("unknown") is None
    with pytest.raises(CapabilityNotFoundError):
        catalog.get("unknown")
    with pytest.raises(ValueError):
        FieldCatalog([work_report, work_report])


def test_load_document(tmp_path) -> None:
    path = tmp_path / "catalog.json"
    path.write_text(
        json.dumps(
            {
                "capabilities": [
                    {
                        "tool_name": "book_room",
                        "provider_code": "office",
                        "fields": [{"name": "room_id", "required": True, "option_query_action": "rooms"}],
                    }
                ],
                "tenant_providers": {"default": {"office": {"base_url": "https://office.example.test"}}},
                "bindings": [{"user_id": "u1", "provider_code": "office", "access_token": "tok"}],
            }
        ),
        encoding="utf-8",
    )

    document = load_document(path)

    assert document.catalog().get("book_room").field("room_id").option_query_action == "rooms"
    assert document.provider_registry().resolve("acme", "office").base_url == "https://office.example.test"
    assert document.binding_store().lookup("default", "u1", "office").access_token == "tok"
