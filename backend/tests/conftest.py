from __future__ import annotations

from collections.abc import Generator
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from fakeredis import FakeStrictRedis

from slotfill.cache import reset_redis_client, set_redis_client
from slotfill.completion import CompletionResult
from slotfill.services.capabilities.catalog import CapabilitySpec, FieldCatalog
from slotfill.services.capabilities.drafts import InMemoryDraftStore
from slotfill.services.capabilities.extraction import SlotExtractor
from slotfill.services.capabilities.providers import ProviderGateway
from slotfill.services.capabilities.submission import SubmissionGateway
from slotfill.services.capability_service import CapabilityService

FORM_URL = "https://forms.example.test/report"

WORK_REPORT: Dict[str, Any] = {
    "tool_name": "submit_work_report",
    "description": "Submit a daily, weekly or monthly work report",
    "endpoint_url": FORM_URL,
    "confirmation_required": True,
    "fields": [
        {
            "name": "types",
            "description": "汇报类型（日报/周报/月报）",
            "required": True,
            "input_mode": "SELECT_SINGLE",
            "options": [
                {"label": "日报", "value": "1"},
                {"label": "周报", "value": "2"},
                {"label": "月报", "value": "3"},
            ],
        },
        {"name": "works", "description": "Work completed, free text", "required": True},
    ],
}


class ScriptedCompleter:
    """Completion collaborator replaying canned replies."""

    def __init__(self, *replies: Any) -> None:
        self.replies: List[Any] = list(replies)
        self.prompts: List[str] = []

    def __call__(self, prompt: str) -> CompletionResult:
        self.prompts.append(prompt)
        if not self.replies:
            return CompletionResult.failure("no scripted reply")
        reply = self.replies.pop(0)
        if isinstance(reply, CompletionResult):
            return reply
        return CompletionResult(text=reply)


class RecordingEndpoint:
    """httpx mock transport handler answering with a configurable reply."""

    def __init__(self, status_code: int = 200, body: Any = None) -> None:
        self.status_code = status_code
        self.body = body if body is not None else {"ok": True}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


@pytest.fixture()
def work_report() -> CapabilitySpec:
    return CapabilitySpec.model_validate(WORK_REPORT)


@pytest.fixture()
def scripted() -> type[ScriptedCompleter]:
    return ScriptedCompleter


@pytest.fixture()
def completer() -> ScriptedCompleter:
    return ScriptedCompleter()


@pytest.fixture()
def form_endpoint() -> RecordingEndpoint:
    return RecordingEndpoint()


@pytest.fixture()
def make_service(
    completer: ScriptedCompleter, form_endpoint: RecordingEndpoint
) -> Callable[..., CapabilityService]:
    """Build a service over in-memory drafts and a mocked form endpoint."""

    def _build(
        *capabilities: CapabilitySpec,
        providers: Optional[ProviderGateway] = None,
        extractor_completer: Optional[Any] = None,
    ) -> CapabilityService:
        http_client = httpx.Client(transport=httpx.MockTransport(form_endpoint))
        return CapabilityService(
            catalog=FieldCatalog(capabilities),
            drafts=InMemoryDraftStore(),
            extractor=SlotExtractor(extractor_completer or completer),
            submission=SubmissionGateway(providers, http_client),
            providers=providers,
        )

    return _build


@pytest.fixture()
def redis_client() -> Generator[FakeStrictRedis, None, None]:
    """Provide a fake Redis client wired into the cache helpers."""

    client = FakeStrictRedis(decode_responses=True)
    set_redis_client(client)
    try:
        yield client
    finally:
        client.flushall()
        reset_redis_client()
