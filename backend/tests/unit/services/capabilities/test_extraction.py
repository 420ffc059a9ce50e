from __future__ import annotations

import pytest

from slotfill.completion import CompletionResult
from slotfill.services.capabilities.catalog import CapabilitySpec
from slotfill.services.capabilities.exceptions import ExtractionFailure
from slotfill.services.capabilities.extraction import SlotExtractor, parse_json_object, render_options
from slotfill.services.capabilities.hints import FieldHint, OptionItem


@pytest.fixture()
def meeting() -> CapabilitySpec:
    return CapabilitySpec.model_validate(
        {
            "tool_name": "book_meeting",
            "provider_code": "office",
            "fields": [
                {"name": "title", "description": "Meeting title", "required": True},
                {
                    "name": "room_id",
                    "description": "Meeting room",
                    "required": True,
                    "option_query_action": "rooms",
                },
                {
                    "name": "join_uids",
                    "description": "Attendees",
                    "input_mode": "SELECT_MULTI",
                    "options": [
                        {"label": "Alice", "value": "u1"},
                        {"label": "Bob", "value": "u2"},
                    ],
                },
                {"name": "cookie", "description": "Auth cookie", "infer_mode": "MANUAL"},
            ],
        }
    )


def _with_manual_types(capability: CapabilitySpec, keep_works: bool = True) -> CapabilitySpec:
    payload = capability.model_dump()
    payload["fields"][0]["infer_mode"] = "MANUAL"
    if not keep_works:
        payload["fields"] = payload["fields"][:1]
    return CapabilitySpec.model_validate(payload)


def test_completion_label_is_mapped_to_canonical_value(work_report, scripted) -> None:
    completer = scripted('{"types": "周报", "unknown": "x"}')
    extractor = SlotExtractor(completer)

    result = extractor.extract(work_report, "我要写周报并提交", ["types"])

    assert result == {"types": "2"}
    prompt = completer.prompts[0]
    assert "key=types" in prompt
    assert "日报(1), 周报(2), 月报(3)" in prompt
    assert "key=works" not in prompt


def test_disabled_field_is_never_a_candidate(work_report, scripted) -> None:
    capability = _with_manual_types(work_report)
    completer = scripted('{"types": "2", "works": "联调"}')
    extractor = SlotExtractor(completer)

    result = extractor.extract(capability, "周报，本周完成联调", ["types", "works"])

    assert result == {"works": "联调"}
    assert "key=types" not in completer.prompts[0]


def test_only_disabled_candidates_skip_the_completion_call(work_report, scripted) -> None:
    capability = _with_manual_types(work_report, keep_works=False)
    completer = scripted('{"types": "2"}')

    assert SlotExtractor(completer).extract(capability, "周报", ["types"]) == {}
    assert completer.prompts == []


def test_bare_option_answer_is_resolved_without_completion(work_report, scripted) -> None:
    completer = scripted()

    result = SlotExtractor(completer).extract(work_report, " 月报 ", ["types", "works"])

    assert result["types"] == "3"
    # works is still open, so completion is asked about it alone.
    assert len(completer.prompts) == 1
    assert "key=types" not in completer.prompts[0]


def test_field_value_lines_are_parsed_deterministically(work_report, scripted) -> None:
    completer = scripted()
    text = "汇报类型：周报\nworks: 完成了接口联调"

    result = SlotExtractor(completer).extract(work_report, text, ["types", "works"])

    assert result == {"types": "2", "works": "完成了接口联调"}
    assert completer.prompts == []


def test_unknown_option_for_fully_enumerated_field_stays_unresolved(work_report, scripted) -> None:
    completer = scripted('{"types": "季报"}')

    assert SlotExtractor(completer).extract(work_report, "写个季报", ["types"]) == {}


def test_completion_failure_yields_no_extraction(work_report, scripted) -> None:
    completer = scripted(CompletionResult.failure("timeout"))

    assert SlotExtractor(completer).extract(work_report, "本周完成联调", ["works"]) == {}


def test_unparseable_reply_yields_no_extraction(work_report, scripted) -> None:
    completer = scripted("I think it is a weekly report")

    assert SlotExtractor(completer).extract(work_report, "本周完成联调", ["works"]) == {}


def test_completer_exception_never_escapes(work_report) -> None:
    def broken(prompt: str) -> CompletionResult:
        raise RuntimeError("boom")

    assert SlotExtractor(broken).extract(work_report, "本周完成联调", ["works"]) == {}


def test_multi_select_and_nested_value_shapes(meeting, scripted) -> None:
    completer = scripted(
        '```json\n{"join_uids": [{"value": "alice"}, "Bob", "alice"], "title": {"value": "  Sprint review "}}\n```'
    )

    result = SlotExtractor(completer).extract(meeting, "Sprint review with Alice and Bob", ["title", "join_uids"])

    assert result == {"title": "Sprint review", "join_uids": "u1,u2"}


def test_provider_options_feed_the_alias_table(meeting, scripted) -> None:
    hints = {
        "room_id": FieldHint(
            field_name="room_id",
            options=[OptionItem(label="Blue room", value="R-12"), OptionItem(label="Red room", value="R-7")],
        )
    }
    completer = scripted('{"room_id": "blue room"}')

    result = SlotExtractor(completer).extract(meeting, "book the blue room please", ["room_id"], hints=hints)

    assert result == {"room_id": "R-12"}
    assert "Blue room(R-12), Red room(R-7)" in completer.prompts[0]


def test_user_text_is_truncated(work_report, scripted) -> None:
    completer = scripted("{}")
    extractor = SlotExtractor(completer, max_input_chars=10)

    extractor.extract(work_report, "x" * 50, ["works"])

    assert "x" * 10 in completer.prompts[0]
    assert "x" * 11 not in completer.prompts[0]


def test_known_slots_are_included_in_prompt(work_report, scripted) -> None:
    completer = scripted("{}")

    SlotExtractor(completer).extract(work_report, "联调", ["works"], known_slots={"types": "2"})

    assert '{"types": "2"}' in completer.prompts[0]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('{"a": 1}', {"a": 1}),
        ('```json\n{"a": 1}\n```', {"a": 1}),
        ('```\n{"a": 1}\n```', {"a": 1}),
        ('Sure! {"a": {"value": 2}} hope this helps', {"a": {"value": 2}}),
    ],
)
def test_parse_json_object_variants(raw, expected) -> None:
    assert parse_json_object(raw) == expected


@pytest.mark.parametrize("raw", ["", "no json here", "[1, 2]", "{broken"])
def test_parse_json_object_failures(raw) -> None:
    with pytest.raises(ExtractionFailure):
        parse_json_object(raw)


def test_render_options_prefers_provider_hint(work_report) -> None:
    types = work_report.field("types")
    hints = {"types": FieldHint(field_name="types", options=[OptionItem(label="Weekly", value="W")])}

    assert render_options(types) == "日报(1), 周报(2), 月报(3)"
    assert render_options(types, hints) == "Weekly(W)"
