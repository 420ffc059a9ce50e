"""Redis connection used by the draft store.

The connection URL comes from :attr:`Settings.redis_url`. The client is
created on first use so the in-memory backend never touches Redis.
"""
from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse

import redis
import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from redis import Redis

from .config import Settings, get_settings

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

_redis_client: Optional[Redis] = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def get_redis_client(settings: Optional[Settings] = None) -> Redis:
    """Return the shared draft-store client, connecting on first use."""

    global _redis_client
    if _redis_client is None:
        _redis_client = _connect((settings or get_settings()).redis_url)
    return _redis_client


def set_redis_client(client: Optional[Redis]) -> None:
    """Install ``client`` as the shared draft-store client (tests use fakeredis)."""

    global _redis_client
    _redis_client = client


def reset_redis_client() -> None:
    set_redis_client(None)


def ping_draft_store() -> bool:
    """Whether the Redis draft store answers a PING."""

    try:
        return bool(get_redis_client().ping())
    except (redis.RedisError, ValueError) as exc:
        logger.warning("draft_store_unreachable", error=str(exc))
        return False


def redact_url(url: str) -> str:
    """Drop credentials from ``url`` so it can be logged."""

    parsed = urlparse(url)
    if parsed.password is None and parsed.username is None:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return parsed._replace(netloc=f"***@{host}").geturl()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------
def _connect(url: str) -> Redis:
    parsed = urlparse(url)
    with tracer.start_as_current_span("drafts.redis.connect") as span:
        span.set_attribute("db.system", "redis")
        span.set_attribute("db.redis.database_index", parsed.path.lstrip("/") or "0")
        span.set_attribute("db.redis.tls", parsed.scheme == "rediss")
        if parsed.hostname:
            span.set_attribute("net.peer.name", parsed.hostname)
        try:
            client = redis.Redis.from_url(url, decode_responses=True)
        except (redis.RedisError, ValueError) as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
        span.set_status(Status(StatusCode.OK))
    logger.info("draft_store_connected", url=redact_url(url))
    return client


__all__ = [
    "get_redis_client",
    "ping_draft_store",
    "redact_url",
    "reset_redis_client",
    "set_redis_client",
]
