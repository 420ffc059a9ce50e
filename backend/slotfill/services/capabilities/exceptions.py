"""Domain-specific exceptions for capability slot filling."""
from __future__ import annotations

from typing import Optional

BIND_NOT_FOUND = "BIND_NOT_FOUND"
PROVIDER_NOT_FOUND = "PROVIDER_NOT_FOUND"
PROVIDER_CALL_FAILED = "PROVIDER_CALL_FAILED"
INVALID_PROVIDER_RESPONSE = "INVALID_PROVIDER_RESPONSE"
INVOCATION_CONTEXT_MISSING = "INVOCATION_CONTEXT_MISSING"


class CapabilityError(Exception):
    """Base class for capability service errors."""


class CapabilityNotFoundError(CapabilityError):
    """Raised when a tool name is not present in the catalog."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Capability '{tool_name}' not found")
        self.tool_name = tool_name


class ExtractionFailure(CapabilityError):
    """Raised internally when a completion reply cannot be used."""


class ProviderCallFailure(CapabilityError):
    """Raised when a provider call cannot be completed."""

    def __init__(self, error_code: str, message: Optional[str] = None) -> None:
        super().__init__(message or error_code)
        self.error_code = error_code


class BindingNotFound(ProviderCallFailure):
    """Raised when the user has no binding for the capability's provider."""

    def __init__(self, provider_code: str, user_id: str) -> None:
        super().__init__(
            BIND_NOT_FOUND,
            f"User '{user_id}' has no binding for provider '{provider_code}'",
        )
        self.provider_code = provider_code
        self.user_id = user_id


class InvalidFieldReference(CapabilityError):
    """Raised when a field references provider actions its capability cannot serve."""

    def __init__(self, tool_name: str, field_name: str) -> None:
        super().__init__(
            f"Field '{field_name}' of '{tool_name}' references a provider action "
            "but the capability has no provider"
        )
        self.tool_name = tool_name
        self.field_name = field_name


class InvalidTransitionError(CapabilityError):
    """Raised when attempting an invalid draft state transition."""


__all__ = [
    "BIND_NOT_FOUND",
    "PROVIDER_NOT_FOUND",
    "PROVIDER_CALL_FAILED",
    "INVALID_PROVIDER_RESPONSE",
    "INVOCATION_CONTEXT_MISSING",
    "CapabilityError",
    "CapabilityNotFoundError",
    "ExtractionFailure",
    "ProviderCallFailure",
    "BindingNotFound",
    "InvalidFieldReference",
    "InvalidTransitionError",
]
