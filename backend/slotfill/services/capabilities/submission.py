"""Final submission of a confirmed capability call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter

from ...telemetry import get_correlation_id
from .aliases import stringify_value
from .catalog import CapabilitySpec
from .exceptions import PROVIDER_CALL_FAILED, PROVIDER_NOT_FOUND, BindingNotFound, ProviderCallFailure
from .providers import InvocationContext, ProviderGateway, unwrap_envelope

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

SUBMISSIONS = Counter(
    "slotfill_submissions_total",
    "Capability submissions grouped by route and outcome.",
    labelnames=("route", "outcome"),
)


@dataclass
class SubmissionResult:
    success: bool
    http_status: Optional[int] = None
    response: Any = None
    error_code: Optional[str] = None
    message: Optional[str] = None


class SubmissionGateway:
    """Performs exactly one submission attempt per call.

    Capabilities with a provider go through the provider submit endpoint;
    the others are posted as an HTML form to their ``endpoint_url``.
    """

    def __init__(
        self,
        providers: Optional[ProviderGateway] = None,
        http_client: Optional[httpx.Client] = None,
        *,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._providers = providers
        self._http = http_client or httpx.Client()
        self._default_timeout = default_timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def submit(
        self,
        capability: CapabilitySpec,
        arguments: Mapping[str, str],
        context: InvocationContext,
    ) -> SubmissionResult:
        """Submit ``arguments``; failures are reported in the result.

        :class:`BindingNotFound` is the one error that propagates.
        """

        form_data = build_form_data(capability, arguments)
        route = "provider" if capability.provider_code else "http_form"
        try:
            if capability.provider_code:
                result = self._submit_via_provider(capability, form_data, arguments, context)
            else:
                result = self._submit_form(capability, form_data, arguments)
        except BindingNotFound:
            SUBMISSIONS.labels(route=route, outcome="binding_missing").inc()
            raise
        except ProviderCallFailure as exc:
            result = SubmissionResult(success=False, error_code=exc.error_code, message=str(exc))

        SUBMISSIONS.labels(route=route, outcome="success" if result.success else "failure").inc()
        log = logger.info if result.success else logger.warning
        log(
            "capability_submitted",
            tool_name=capability.tool_name,
            route=route,
            success=result.success,
            http_status=result.http_status,
            error_code=result.error_code,
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _submit_via_provider(
        self,
        capability: CapabilitySpec,
        form_data: Dict[str, str],
        arguments: Mapping[str, str],
        context: InvocationContext,
    ) -> SubmissionResult:
        if self._providers is None:
            raise ProviderCallFailure(PROVIDER_NOT_FOUND, "no provider gateway configured")
        response = self._providers.submit(capability, form_data, arguments, context)
        try:
            data = unwrap_envelope(response)
        except ProviderCallFailure as exc:
            return SubmissionResult(
                success=False,
                http_status=response.status_code,
                response=response.body,
                error_code=exc.error_code,
                message=str(exc),
            )
        return SubmissionResult(success=True, http_status=response.status_code, response=data)

    def _submit_form(
        self,
        capability: CapabilitySpec,
        form_data: Dict[str, str],
        arguments: Mapping[str, str],
    ) -> SubmissionResult:
        if not capability.endpoint_url:
            raise ProviderCallFailure(
                PROVIDER_NOT_FOUND,
                f"Capability '{capability.tool_name}' has neither a provider nor an endpoint",
            )

        headers = dict(capability.headers)
        for header_name, argument_name in capability.header_args.items():
            value = stringify_value(arguments.get(argument_name))
            if value:
                headers[header_name] = value
        correlation_id = get_correlation_id()
        if correlation_id and "X-Correlation-ID" not in headers:
            headers["X-Correlation-ID"] = correlation_id

        request: Dict[str, Any] = {
            "headers": headers,
            "timeout": capability.timeout_seconds or self._default_timeout,
        }
        if capability.method == "GET":
            request["params"] = form_data
        elif "json" in capability.content_type.lower():
            request["json"] = form_data
        else:
            headers.setdefault("Content-Type", capability.content_type)
            request["data"] = form_data

        with tracer.start_as_current_span("capability.submit") as span:
            span.set_attribute("capability.tool_name", capability.tool_name)
            span.set_attribute("http.method", capability.method)
            span.set_attribute("http.url", capability.endpoint_url)
            try:
                response = self._http.request(capability.method, capability.endpoint_url, **request)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise ProviderCallFailure(PROVIDER_CALL_FAILED, f"submission failed: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text
            success = response.is_success
            span.set_status(Status(StatusCode.OK) if success else Status(StatusCode.ERROR))
            return SubmissionResult(
                success=success,
                http_status=response.status_code,
                response=body,
                error_code=None if success else PROVIDER_CALL_FAILED,
                message=None if success else f"endpoint returned HTTP {response.status_code}",
            )


def build_form_data(capability: CapabilitySpec, arguments: Mapping[str, Any]) -> Dict[str, str]:
    """Static form defaults overlaid with the submitted field values."""

    form: Dict[str, str] = {str(key): stringify_value(value) for key, value in capability.default_form_data.items()}
    header_sources = set(capability.header_args.values())
    names = capability.form_field_names or [
        name for name in capability.field_names if name not in header_sources
    ]
    for name in names:
        value = stringify_value(arguments.get(name))
        if value:
            form[name] = value
    return form


__all__ = ["SubmissionGateway", "SubmissionResult", "build_form_data"]
