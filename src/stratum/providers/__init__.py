"""Provider adapters.

Adapters with optional dependencies (cloud, kubernetes) are imported lazily
through the registry, so this package only exports the protocol types.
"""

from .base import (
    PROVIDER_KINDS,
    Provider,
    ProviderRegistry,
    ResourceSchema,
    lookup_schema,
    schemas_from_options,
)
from .local import LocalProvider

__all__ = [
    "PROVIDER_KINDS",
    "LocalProvider",
    "Provider",
    "ProviderRegistry",
    "ResourceSchema",
    "lookup_schema",
    "schemas_from_options",
]
