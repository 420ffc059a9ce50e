"""Option, default-value and submit calls against external providers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter, Histogram
from pydantic import BaseModel, Field

from ...telemetry import get_correlation_id
from .aliases import stringify_value
from .catalog import CapabilitySpec, FieldSpec
from .exceptions import (
    INVALID_PROVIDER_RESPONSE,
    INVOCATION_CONTEXT_MISSING,
    PROVIDER_CALL_FAILED,
    PROVIDER_NOT_FOUND,
    BindingNotFound,
    InvalidFieldReference,
    ProviderCallFailure,
)
from .hints import FieldHint, FieldHints, OptionItem

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TENANT = "default"
OPTION_QUERY = "option_query"
DEFAULT_VALUE = "default_value"
SUBMIT = "submit"

_SUCCESS_CODES = {"OK", "0", "200"}
_TRUTHY = {"true", "1", "yes", "y"}

PROVIDER_CALLS = Counter(
    "slotfill_provider_calls_total",
    "Provider calls grouped by kind and outcome.",
    labelnames=("kind", "outcome"),
)
PROVIDER_LATENCY = Histogram(
    "slotfill_provider_call_seconds",
    "Latency of provider calls.",
    labelnames=("kind",),
)


class ProviderConfig(BaseModel):
    """Connection settings for one provider of one tenant."""

    base_url: str = Field(..., min_length=1)
    option_query_path: str = "/capability/provider/options/query"
    default_value_path: str = "/capability/provider/default/value"
    submit_path: str = "/capability/provider/submit"
    timeout_seconds: float = Field(default=10.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    token_header_name: str = "Authorization"
    token_prefix: str = "Bearer "

    def url_for(self, kind: str) -> str:
        paths = {
            OPTION_QUERY: self.option_query_path,
            DEFAULT_VALUE: self.default_value_path,
            SUBMIT: self.submit_path,
        }
        path = paths[kind]
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


class ProviderBinding(BaseModel):
    """Credentials linking a user to a provider account."""

    tenant_id: str = DEFAULT_TENANT
    user_id: str
    provider_code: str
    access_token: str
    external_user_id: Optional[str] = None


@dataclass(frozen=True)
class InvocationContext:
    tenant_id: str = DEFAULT_TENANT
    user_id: Optional[str] = None

    @classmethod
    def build(cls, tenant_id: Optional[str] = None, user_id: Optional[str] = None) -> "InvocationContext":
        tenant = (tenant_id or "").strip() or DEFAULT_TENANT
        user = (user_id or "").strip() or None
        return cls(tenant_id=tenant, user_id=user)

    def require_user(self) -> str:
        if not self.user_id:
            raise ProviderCallFailure(INVOCATION_CONTEXT_MISSING, "user_id is required for provider calls")
        return self.user_id


class ProviderRegistry:
    """Provider configuration per tenant, falling back to the default tenant."""

    def __init__(self, configs: Optional[Mapping[str, Mapping[str, ProviderConfig]]] = None) -> None:
        self._configs: Dict[str, Dict[str, ProviderConfig]] = {
            tenant: dict(providers) for tenant, providers in (configs or {}).items()
        }

    def resolve(self, tenant_id: str, provider_code: str) -> ProviderConfig:
        for tenant in (tenant_id, DEFAULT_TENANT):
            config = self._configs.get(tenant, {}).get(provider_code)
            if config is not None:
                return config
        raise ProviderCallFailure(
            PROVIDER_NOT_FOUND,
            f"Provider '{provider_code}' is not configured for tenant '{tenant_id}'",
        )


class BindingStore(Protocol):
    def lookup(self, tenant_id: str, user_id: str, provider_code: str) -> ProviderBinding:
        ...


class InMemoryBindingStore:
    """Static binding lookup; issuing or refreshing tokens happens elsewhere."""

    def __init__(self, bindings: Iterable[ProviderBinding] = ()) -> None:
        self._bindings: Dict[Tuple[str, str, str], ProviderBinding] = {}
        for binding in bindings:
            self.add(binding)

    def add(self, binding: ProviderBinding) -> None:
        self._bindings[(binding.tenant_id, binding.user_id, binding.provider_code)] = binding

    def lookup(self, tenant_id: str, user_id: str, provider_code: str) -> ProviderBinding:
        binding = self._bindings.get((tenant_id, user_id, provider_code))
        if binding is None:
            raise BindingNotFound(provider_code, user_id)
        return binding


@dataclass
class ProviderResponse:
    status_code: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class HintResolution:
    """Hints for missing fields plus slots filled by default providers."""

    hints: FieldHints = field(default_factory=dict)
    defaulted: Dict[str, str] = field(default_factory=dict)


class ProviderClient:
    """Performs authenticated JSON calls to provider endpoints.

    The underlying :class:`httpx.Client` is shared between turns; it pools
    connections and is safe to use from several threads.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        bindings: BindingStore,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._registry = registry
        self._bindings = bindings
        self._http = http_client or httpx.Client()

    def close(self) -> None:
        self._http.close()

    def call(
        self,
        provider_code: str,
        kind: str,
        payload: Dict[str, Any],
        context: InvocationContext,
    ) -> ProviderResponse:
        """POST ``payload`` to the provider endpoint for ``kind``.

        HTTP error statuses are returned, not raised; transport failures,
        missing configuration and missing bindings raise
        :class:`ProviderCallFailure` (or its :class:`BindingNotFound` subclass).
        """

        user_id = context.require_user()
        config = self._registry.resolve(context.tenant_id, provider_code)
        binding = self._bindings.lookup(context.tenant_id, user_id, provider_code)

        headers = dict(config.headers)
        headers[config.token_header_name] = f"{config.token_prefix}{binding.access_token}"
        correlation_id = get_correlation_id()
        if correlation_id and "X-Correlation-ID" not in headers:
            headers["X-Correlation-ID"] = correlation_id

        url = config.url_for(kind)
        started = time.perf_counter()
        with tracer.start_as_current_span("provider.call") as span:
            span.set_attribute("provider.code", provider_code)
            span.set_attribute("provider.kind", kind)
            span.set_attribute("http.url", url)
            try:
                response = self._http.post(
                    url, json=payload, headers=headers, timeout=config.timeout_seconds
                )
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                PROVIDER_CALLS.labels(kind=kind, outcome="transport_error").inc()
                raise ProviderCallFailure(PROVIDER_CALL_FAILED, f"{kind} call failed: {exc}") from exc
            finally:
                PROVIDER_LATENCY.labels(kind=kind).observe(time.perf_counter() - started)

            span.set_attribute("http.status_code", response.status_code)
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text
            result = ProviderResponse(status_code=response.status_code, body=body)
            if result.ok:
                span.set_status(Status(StatusCode.OK))
            else:
                span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
            PROVIDER_CALLS.labels(kind=kind, outcome="ok" if result.ok else "http_error").inc()
            return result


class ProviderGateway:
    """Resolves option lists and default values for missing fields."""

    def __init__(self, client: ProviderClient) -> None:
        self._client = client

    @property
    def client(self) -> ProviderClient:
        return self._client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def resolve_hints(
        self,
        capability: CapabilitySpec,
        slots: Mapping[str, str],
        missing_fields: Iterable[str],
        context: InvocationContext,
    ) -> HintResolution:
        """Run default providers, then option providers, for ``missing_fields``.

        Per-field failures leave that field without a hint. A missing binding
        is fatal for the turn and propagates as :class:`BindingNotFound`.
        """

        resolution = HintResolution()
        working = dict(slots)
        fields = [f for f in (capability.field(name) for name in missing_fields) if f is not None]

        for spec in fields:
            if spec.default_value_action is None:
                continue
            try:
                value = self._query_default(capability, spec, working, context)
            except BindingNotFound:
                raise
            except (ProviderCallFailure, InvalidFieldReference) as exc:
                self._log_hint_failure(capability, spec, DEFAULT_VALUE, exc)
                continue
            if value:
                working[spec.name] = value
                resolution.defaulted[spec.name] = value
                resolution.hints[spec.name] = FieldHint(
                    field_name=spec.name,
                    input_mode=spec.input_mode,
                    depends_on=list(spec.depends_on),
                    default_value=value,
                    default_applied=True,
                )

        for spec in fields:
            if spec.name in resolution.defaulted or spec.option_query_action is None:
                continue
            unresolved = [dep for dep in spec.depends_on if not str(working.get(dep, "")).strip()]
            if unresolved:
                logger.debug(
                    "option_query_deferred",
                    tool_name=capability.tool_name,
                    field_name=spec.name,
                    waiting_for=unresolved,
                )
                continue
            try:
                resolution.hints[spec.name] = self._query_options(capability, spec, working, context)
            except BindingNotFound:
                raise
            except (ProviderCallFailure, InvalidFieldReference) as exc:
                self._log_hint_failure(capability, spec, OPTION_QUERY, exc)

        return resolution

    def submit(
        self,
        capability: CapabilitySpec,
        form_data: Mapping[str, str],
        arguments: Mapping[str, Any],
        context: InvocationContext,
    ) -> ProviderResponse:
        provider_code = self._require_provider(capability, None)
        payload = {
            "action": capability.submit_action or "submit",
            "tool_name": capability.tool_name,
            "form_data": dict(form_data),
            "arguments": dict(arguments),
            "tenant_id": context.tenant_id,
            "user_id": context.user_id,
        }
        return self._client.call(provider_code, SUBMIT, payload, context)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _query_default(
        self,
        capability: CapabilitySpec,
        spec: FieldSpec,
        slots: Mapping[str, str],
        context: InvocationContext,
    ) -> Optional[str]:
        provider_code = self._require_provider(capability, spec)
        payload = {
            "action": spec.default_value_action,
            "tool_name": capability.tool_name,
            "field_name": spec.name,
            "slots": dict(slots),
            "tenant_id": context.tenant_id,
            "user_id": context.user_id,
        }
        data = unwrap_envelope(self._client.call(provider_code, DEFAULT_VALUE, payload, context))
        value = stringify_value(data.get("value"))
        return value or None

    def _query_options(
        self,
        capability: CapabilitySpec,
        spec: FieldSpec,
        slots: Mapping[str, str],
        context: InvocationContext,
    ) -> FieldHint:
        provider_code = self._require_provider(capability, spec)
        payload = {
            "action": spec.option_query_action,
            "tool_name": capability.tool_name,
            "field_name": spec.name,
            "slots": dict(slots),
            "tenant_id": context.tenant_id,
            "user_id": context.user_id,
            "cursor": slots.get(f"{spec.name}_cursor") or slots.get(f"cursor_{spec.name}"),
            "limit": spec.option_page_size,
        }
        data = unwrap_envelope(self._client.call(provider_code, OPTION_QUERY, payload, context))
        raw_items = data.get("items")
        if raw_items is None:
            raw_items = data.get("options") or []
        if not isinstance(raw_items, list):
            raise ProviderCallFailure(INVALID_PROVIDER_RESPONSE, "option items must be a list")
        cursor = data.get("cursor", data.get("next_cursor"))
        return FieldHint(
            field_name=spec.name,
            input_mode=spec.input_mode,
            options=parse_option_items(raw_items),
            next_cursor=stringify_value(cursor) or None,
            has_more=_as_bool(data.get("has_more")),
            depends_on=list(spec.depends_on),
        )

    @staticmethod
    def _require_provider(capability: CapabilitySpec, spec: Optional[FieldSpec]) -> str:
        if capability.provider_code:
            return capability.provider_code
        if spec is not None:
            raise InvalidFieldReference(capability.tool_name, spec.name)
        raise ProviderCallFailure(
            PROVIDER_NOT_FOUND, f"Capability '{capability.tool_name}' has no provider"
        )

    @staticmethod
    def _log_hint_failure(
        capability: CapabilitySpec, spec: FieldSpec, kind: str, exc: Exception
    ) -> None:
        logger.warning(
            "field_hint_unavailable",
            tool_name=capability.tool_name,
            field_name=spec.name,
            kind=kind,
            error_code=getattr(exc, "error_code", None),
            error=str(exc),
        )


def unwrap_envelope(response: ProviderResponse) -> Dict[str, Any]:
    """Return the data object of a provider reply, raising on failures."""

    if not response.ok:
        raise ProviderCallFailure(PROVIDER_CALL_FAILED, f"provider returned HTTP {response.status_code}")
    body = response.body
    if not isinstance(body, dict):
        raise ProviderCallFailure(INVALID_PROVIDER_RESPONSE, "provider reply is not a JSON object")
    if "code" in body:
        code = stringify_value(body.get("code")).upper()
        if code not in _SUCCESS_CODES:
            message = body.get("message") or body.get("msg") or f"provider returned code {code}"
            raise ProviderCallFailure(PROVIDER_CALL_FAILED, str(message))
        data = body.get("data")
        return data if isinstance(data, dict) else {}
    return body


def parse_option_items(raw_items: Iterable[Any]) -> List[OptionItem]:
    items: List[OptionItem] = []
    for raw in raw_items:
        if isinstance(raw, dict):
            value = stringify_value(raw.get("value"))
            if not value:
                continue
            label = stringify_value(raw.get("label")) or value
            extra = raw.get("extra")
            items.append(OptionItem(label=label, value=value, extra=dict(extra) if isinstance(extra, dict) else {}))
        else:
            value = stringify_value(raw)
            if value:
                items.append(OptionItem(label=value, value=value))
    return items


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return stringify_value(value).lower() in _TRUTHY


__all__ = [
    "DEFAULT_TENANT",
    "HintResolution",
    "InMemoryBindingStore",
    "InvocationContext",
    "ProviderBinding",
    "ProviderClient",
    "ProviderConfig",
    "ProviderGateway",
    "ProviderRegistry",
    "ProviderResponse",
    "parse_option_items",
    "unwrap_envelope",
]
