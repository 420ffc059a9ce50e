from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from slotfill.api.capabilities import get_capability_service
from slotfill.config import Settings, get_settings
from slotfill.main import app

TOOL = "submit_work_report"


@pytest.fixture()
def service(make_service, work_report):
    return make_service(work_report)


@pytest.fixture()
def client(service) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_capability_service] = lambda: service
    app.dependency_overrides[get_settings] = lambda: Settings(SLOTFILL_DRAFT_BACKEND="memory")
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def test_list_capabilities(client: TestClient) -> None:
    response = client.get("/capabilities")

    assert response.status_code == 200
    (definition,) = response.json()
    assert definition["name"] == TOOL
    assert definition["input_schema"]["properties"]["types"]["enum"] == ["1", "2", "3"]


def test_invoke_walks_through_collect_confirm_submit(client: TestClient, form_endpoint) -> None:
    first = client.post(f"/capabilities/{TOOL}/invoke", json={"conversation_id": "c1", "arguments": {}})
    assert first.status_code == 200
    assert first.json()["status"] == "SLOT_MISSING"

    second = client.post(
        f"/capabilities/{TOOL}/invoke",
        json={"conversation_id": "c1", "arguments": {"types": "周报", "works": "联调"}},
    )
    assert second.json()["status"] == "WAIT_CONFIRM"
    assert second.json()["preview"] == {"types": "2", "works": "联调"}

    third = client.post(
        f"/capabilities/{TOOL}/invoke",
        json={"conversation_id": "c1", "arguments": {}, "user_input": "确认"},
        headers={"X-Correlation-ID": "corr-123"},
    )
    assert third.json()["status"] == "SUBMITTED"
    assert third.headers["X-Correlation-ID"] == "corr-123"
    assert form_endpoint.requests[0].headers["X-Correlation-ID"] == "corr-123"


def test_invoke_unknown_capability_returns_404(client: TestClient) -> None:
    response = client.post("/capabilities/unknown/invoke", json={"conversation_id": "c1"})

    assert response.status_code == 404


def test_invoke_requires_conversation_id(client: TestClient) -> None:
    response = client.post(f"/capabilities/{TOOL}/invoke", json={"arguments": {}})

    assert response.status_code == 422


def test_turn_resumes_active_draft(client: TestClient, service) -> None:
    service.invoke(TOOL, "c1", {"types": "2", "works": "联调"})

    response = client.post(
        "/conversations/c1/turns",
        json={
            "messages": [
                {"role": "tool", "name": TOOL, "content": '{"status": "WAIT_CONFIRM"}'},
                {"role": "user", "content": "ok"},
            ]
        },
    )

    body = response.json()
    assert response.status_code == 200
    assert body["resumed"] is True
    assert body["tool_call"]["arguments"]["confirmed"] is True
    assert body["result"]["status"] == "SUBMITTED"


def test_turn_without_draft_is_not_resumed(client: TestClient) -> None:
    response = client.post("/conversations/c9/turns", json={"user_input": "hello"})

    assert response.json() == {"resumed": False, "tool_call": None, "result": None}


def test_list_drafts(client: TestClient, service) -> None:
    service.invoke(TOOL, "c1", {"types": "2"})

    response = client.get("/conversations/c1/drafts")

    (draft,) = response.json()
    assert draft["status"] == "COLLECTING"
    assert draft["slots"] == {"types": "2"}
    assert draft["missing_fields"] == ["works"]


def test_healthz_and_metrics(client: TestClient) -> None:
    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "capabilities": 1, "draft_backend": "memory"}

    client.post(f"/capabilities/{TOOL}/invoke", json={"conversation_id": "c1"})
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "slotfill_invocations_total" in metrics.text
    assert "slotfill_request_total" in metrics.text
