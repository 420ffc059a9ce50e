"""Service layer for capability invocation and draft resumption."""

from .capability_service import CapabilityService, build_capability_service
from .resume import ResumeCoordinator

__all__ = ["CapabilityService", "ResumeCoordinator", "build_capability_service"]
