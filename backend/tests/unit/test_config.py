from __future__ import annotations

import pytest
from pydantic import ValidationError

from slotfill.config import Settings


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SLOTFILL_DRAFT_BACKEND", " Redis ")
    monkeypatch.setenv("SLOTFILL_DRAFT_TTL_SECONDS", "600")
    monkeypatch.setenv("SLOTFILL_ALLOW_ORIGINS", "https://a.example, ,https://b.example")
    monkeypatch.setenv("SLOTFILL_EXTRACTION_MAX_INPUT_CHARS", "500")
    monkeypatch.setenv("SLOTFILL_REDIS_URL", "rediss://drafts.internal:6380/1")

    settings = Settings()

    assert settings.draft_backend == "redis"
    assert settings.draft_ttl_seconds == 600
    assert settings.allow_origins == ["https://a.example", "https://b.example"]
    assert settings.extraction_max_input_chars == 500
    assert settings.redis_url == "rediss://drafts.internal:6380/1"


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("SLOTFILL_DRAFT_BACKEND", "SLOTFILL_CATALOG_PATH", "SLOTFILL_OPENAI_MODEL", "SLOTFILL_REDIS_URL"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings()

    assert settings.draft_backend == "memory"
    assert settings.catalog_path is None
    assert settings.openai_model == "gpt-4o-mini"
    assert settings.redis_url == "redis://localhost:6379/0"


def test_unknown_draft_backend_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(SLOTFILL_DRAFT_BACKEND="sqlite")
