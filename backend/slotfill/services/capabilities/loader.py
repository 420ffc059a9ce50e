"""Load the capability catalog document from disk."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Union

from pydantic import BaseModel, Field

from .catalog import CapabilitySpec, FieldCatalog
from .providers import InMemoryBindingStore, ProviderBinding, ProviderConfig, ProviderRegistry


class CatalogDocument(BaseModel):
    """Capabilities plus the provider settings and bindings they rely on."""

    capabilities: List[CapabilitySpec] = Field(default_factory=list)
    tenant_providers: Dict[str, Dict[str, ProviderConfig]] = Field(default_factory=dict)
    bindings: List[ProviderBinding] = Field(default_factory=list)

    def catalog(self) -> FieldCatalog:
        return FieldCatalog(self.capabilities)

    def provider_registry(self) -> ProviderRegistry:
        return ProviderRegistry(self.tenant_providers)

    def binding_store(self) -> InMemoryBindingStore:
        return InMemoryBindingStore(self.bindings)


def load_document(path: Union[str, Path]) -> CatalogDocument:
    """Parse and validate the JSON catalog document at ``path``."""

    raw = Path(path).read_text(encoding="utf-8")
    return CatalogDocument.model_validate(json.loads(raw))


__all__ = ["CatalogDocument", "load_document"]
