"""Per-conversation draft persistence."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog
from redis import Redis

from ...cache import get_redis_client
from .fsm import ACTIVE_STATUSES, DraftStatus

logger = structlog.get_logger(__name__)

_KEY_PREFIX = "slotfill"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Draft:
    """Partially collected arguments of one capability in one conversation."""

    tool_name: str
    conversation_id: str
    slots: Dict[str, str] = field(default_factory=dict)
    status: DraftStatus = DraftStatus.COLLECTING
    missing_fields: List[str] = field(default_factory=list)
    field_labels: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.conversation_id, self.tool_name)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "conversation_id": self.conversation_id,
            "slots": dict(self.slots),
            "status": self.status.value,
            "missing_fields": list(self.missing_fields),
            "field_labels": dict(self.field_labels),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Draft":
        return cls(
            tool_name=str(payload["tool_name"]),
            conversation_id=str(payload["conversation_id"]),
            slots={str(k): str(v) for k, v in (payload.get("slots") or {}).items()},
            status=DraftStatus(payload.get("status", DraftStatus.COLLECTING.value)),
            missing_fields=[str(name) for name in payload.get("missing_fields") or []],
            field_labels={str(k): str(v) for k, v in (payload.get("field_labels") or {}).items()},
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
        )


class DraftStore(Protocol):
    """Storage contract for drafts keyed by conversation and tool."""

    def get(self, conversation_id: str, tool_name: str) -> Optional[Draft]:
        ...

    def save(self, draft: Draft) -> None:
        ...

    def delete(self, conversation_id: str, tool_name: str) -> None:
        ...

    def list_for_conversation(self, conversation_id: str) -> List[Draft]:
        """Return every draft of the conversation, oldest first."""
        ...


class InMemoryDraftStore:
    """Process-local draft store, suitable for tests and single workers."""

    def __init__(self) -> None:
        self._drafts: Dict[Tuple[str, str], Draft] = {}

    def get(self, conversation_id: str, tool_name: str) -> Optional[Draft]:
        draft = self._drafts.get((conversation_id, tool_name))
        return copy.deepcopy(draft) if draft is not None else None

    def save(self, draft: Draft) -> None:
        self._drafts[draft.key] = copy.deepcopy(draft)

    def delete(self, conversation_id: str, tool_name: str) -> None:
        self._drafts.pop((conversation_id, tool_name), None)

    def list_for_conversation(self, conversation_id: str) -> List[Draft]:
        drafts = [
            copy.deepcopy(draft)
            for (conversation, _), draft in list(self._drafts.items())
            if conversation == conversation_id
        ]
        return sorted(drafts, key=lambda item: item.created_at)


class RedisDraftStore:
    """Draft store persisting JSON documents in Redis with an expiry."""

    def __init__(self, client: Optional[Redis] = None, *, ttl_seconds: int = 86400) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds

    @property
    def client(self) -> Redis:
        return self._client if self._client is not None else get_redis_client()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get(self, conversation_id: str, tool_name: str) -> Optional[Draft]:
        raw = self.client.get(self._draft_key(conversation_id, tool_name))
        if raw is None:
            return None
        return Draft.from_dict(json.loads(raw))

    def save(self, draft: Draft) -> None:
        index_key = self._index_key(draft.conversation_id)
        pipeline = self.client.pipeline()
        pipeline.set(
            self._draft_key(draft.conversation_id, draft.tool_name),
            json.dumps(draft.to_dict(), separators=(",", ":"), ensure_ascii=False),
            ex=self._ttl_seconds,
        )
        pipeline.sadd(index_key, draft.tool_name)
        pipeline.expire(index_key, self._ttl_seconds)
        pipeline.execute()

    def delete(self, conversation_id: str, tool_name: str) -> None:
        pipeline = self.client.pipeline()
        pipeline.delete(self._draft_key(conversation_id, tool_name))
        pipeline.srem(self._index_key(conversation_id), tool_name)
        pipeline.execute()

    def list_for_conversation(self, conversation_id: str) -> List[Draft]:
        index_key = self._index_key(conversation_id)
        drafts: List[Draft] = []
        for tool_name in sorted(self.client.smembers(index_key)):
            draft = self.get(conversation_id, tool_name)
            if draft is None:
                # Expired independently of the index.
                self.client.srem(index_key, tool_name)
                logger.debug(
                    "draft_index_entry_pruned",
                    conversation_id=conversation_id,
                    tool_name=tool_name,
                )
                continue
            drafts.append(draft)
        return sorted(drafts, key=lambda item: item.created_at)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _draft_key(conversation_id: str, tool_name: str) -> str:
        return f"{_KEY_PREFIX}:draft:{conversation_id}:{tool_name}"

    @staticmethod
    def _index_key(conversation_id: str) -> str:
        return f"{_KEY_PREFIX}:conversation:{conversation_id}:drafts"


__all__ = ["Draft", "DraftStore", "InMemoryDraftStore", "RedisDraftStore"]
