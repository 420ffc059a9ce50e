from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from slotfill.services.capabilities.drafts import Draft, InMemoryDraftStore, RedisDraftStore
from slotfill.services.capabilities.fsm import DraftStatus


def _draft(conversation_id: str, tool_name: str, minutes_ago: int = 0, **kwargs) -> Draft:
    created = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago)
    return Draft(
        tool_name=tool_name,
        conversation_id=conversation_id,
        created_at=created,
        updated_at=created,
        **kwargs,
    )


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return InMemoryDraftStore()
    return RedisDraftStore(request.getfixturevalue("redis_client"), ttl_seconds=60)


def test_save_and_get_round_trip(store) -> None:
    draft = _draft("c1", "submit_work_report", slots={"types": "2"}, missing_fields=["works"])
    draft.field_labels = {"types": "汇报类型"}

    store.save(draft)
    loaded = store.get("c1", "submit_work_report")

    assert loaded == draft
    assert loaded is not draft
    assert store.get("c1", "other") is None
    assert store.get("c2", "submit_work_report") is None


def test_saving_replaces_previous_version(store) -> None:
    draft = _draft("c1", "book_room")
    store.save(draft)

    draft.slots["room_id"] = "R-12"
    draft.status = DraftStatus.WAIT_CONFIRM
    store.save(draft)

    loaded = store.get("c1", "book_room")
    assert loaded.slots == {"room_id": "R-12"}
    assert loaded.status is DraftStatus.WAIT_CONFIRM
    assert len(store.list_for_conversation("c1")) == 1


def test_list_is_scoped_and_oldest_first(store) -> None:
    store.save(_draft("c1", "newer", minutes_ago=1))
    store.save(_draft("c1", "older", minutes_ago=30))
    store.save(_draft("c2", "elsewhere", minutes_ago=60))

    assert [draft.tool_name for draft in store.list_for_conversation("c1")] == ["older", "newer"]
    assert store.list_for_conversation("missing") == []


def test_delete_removes_draft(store) -> None:
    store.save(_draft("c1", "book_room"))

    store.delete("c1", "book_room")
    store.delete("c1", "never_saved")

    assert store.get("c1", "book_room") is None
    assert store.list_for_conversation("c1") == []


def test_in_memory_store_isolates_callers() -> None:
    store = InMemoryDraftStore()
    draft = _draft("c1", "book_room")
    store.save(draft)

    draft.slots["room_id"] = "mutated"
    loaded = store.get("c1", "book_room")
    loaded.slots["room_id"] = "also mutated"

    assert store.get("c1", "book_room").slots == {}


def test_redis_store_layout_and_expiry(redis_client) -> None:
    store = RedisDraftStore(redis_client, ttl_seconds=120)
    store.save(_draft("c1", "book_room", slots={"room_id": "R-12"}))

    raw = redis_client.get("slotfill:draft:c1:book_room")
    assert json.loads(raw)["slots"] == {"room_id": "R-12"}
    assert redis_client.smembers("slotfill:conversation:c1:drafts") == {"book_room"}
    assert 0 < redis_client.ttl("slotfill:draft:c1:book_room") <= 120


def test_redis_store_prunes_expired_index_entries(redis_client) -> None:
    store = RedisDraftStore(redis_client)
    store.save(_draft("c1", "book_room"))
    store.save(_draft("c1", "submit_work_report", minutes_ago=5))
    redis_client.delete("slotfill:draft:c1:book_room")

    drafts = store.list_for_conversation("c1")

    assert [draft.tool_name for draft in drafts] == ["submit_work_report"]
    assert redis_client.smembers("slotfill:conversation:c1:drafts") == {"submit_work_report"}


def test_redis_store_uses_shared_client_by_default(redis_client) -> None:
    store = RedisDraftStore()
    store.save(_draft("c9", "book_room"))

    assert redis_client.exists("slotfill:draft:c9:book_room") == 1


def test_draft_activity_follows_status() -> None:
    assert _draft("c1", "t").is_active
    assert _draft("c1", "t", status=DraftStatus.SUBMIT_FAILED).is_active
    assert not _draft("c1", "t", status=DraftStatus.SUBMITTED).is_active
