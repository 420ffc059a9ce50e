from __future__ import annotations

from collections.abc import Generator
from typing import Any, List

import pytest
import redis

from slotfill import cache
from slotfill.config import Settings, get_settings


@pytest.fixture()
def captured_urls(monkeypatch: pytest.MonkeyPatch) -> Generator[List[str], None, None]:
    urls: List[str] = []

    def fake_from_url(url: str, **kwargs: Any) -> str:
        urls.append(url)
        return f"client-for:{url}"

    monkeypatch.setattr(cache.redis.Redis, "from_url", fake_from_url)
    cache.reset_redis_client()
    yield urls
    cache.reset_redis_client()


def test_client_uses_settings_url(captured_urls: List[str]) -> None:
    settings = Settings(redis_url="rediss://:s3cret@drafts.internal:6380/2")

    first = cache.get_redis_client(settings)
    second = cache.get_redis_client(settings)

    assert first is second
    assert captured_urls == ["rediss://:s3cret@drafts.internal:6380/2"]


def test_client_reads_url_from_environment(monkeypatch: pytest.MonkeyPatch, captured_urls: List[str]) -> None:
    monkeypatch.setenv("SLOTFILL_REDIS_URL", "redis://drafts.internal:6379/4")
    get_settings.cache_clear()
    try:
        cache.get_redis_client()
    finally:
        get_settings.cache_clear()

    assert captured_urls == ["redis://drafts.internal:6379/4"]


@pytest.mark.parametrize(
    "url, expected",
    [
        ("redis://localhost:6379/0", "redis://localhost:6379/0"),
        ("rediss://:s3cret@drafts.internal:6380/2", "rediss://***@drafts.internal:6380/2"),
        ("redis://user:pw@drafts.internal/1", "redis://***@drafts.internal/1"),
    ],
)
def test_redact_url_hides_credentials(url: str, expected: str) -> None:
    assert cache.redact_url(url) == expected


def test_ping_reports_reachable_store(redis_client) -> None:
    assert cache.ping_draft_store() is True


def test_ping_reports_unreachable_store() -> None:
    class Unreachable:
        def ping(self) -> bool:
            raise redis.ConnectionError("connection refused")

    cache.set_redis_client(Unreachable())
    try:
        assert cache.ping_draft_store() is False
    finally:
        cache.reset_redis_client()


def test_client_override_and_reset(redis_client) -> None:
    assert cache.get_redis_client() is redis_client

    cache.reset_redis_client()
    cache.set_redis_client(redis_client)

    assert cache.get_redis_client() is redis_client
