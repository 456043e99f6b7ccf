"""Provider protocol, schema data and the provider registry.

This module defines the Provider protocol that every adapter (local, cloud,
Kubernetes, Helm) implements. The protocol uses Python's typing.Protocol with
the @runtime_checkable decorator, so adapters need no common base class.
The executor only ever talks to this interface.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..exceptions import ConfigurationError, ProviderNotFoundError, UnsupportedResourceTypeError

if TYPE_CHECKING:
    from ..config import ProviderDecl
    from ..models import AttributeChange

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSchema:
    """
    Provider-declared attribute metadata for one resource type.

    Attributes not listed in ``force_new`` are updatable in place.
    Computed attributes are assigned by the provider and never diffed.

    Attributes:
        resource_type: Resource type name (e.g., "aws_vpc")
        identifier: Attribute holding the provider-assigned identifier
        force_new: Attributes whose change forces replacement
        computed: Attributes assigned by the provider
        options: Adapter-specific extra data (e.g., remote type name)
    """

    resource_type: str
    identifier: str = "id"
    force_new: frozenset[str] = frozenset()
    computed: frozenset[str] = frozenset()
    options: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, resource_type: str, d: dict[str, Any] | None) -> ResourceSchema:
        d = dict(d or {})
        identifier = d.pop("identifier", "id")
        force_new = frozenset(d.pop("force_new", []) or [])
        computed = frozenset(d.pop("computed", []) or []) | {identifier}
        return cls(
            resource_type=resource_type,
            identifier=identifier,
            force_new=force_new,
            computed=computed,
            options=d,
        )

    def forces_replacement(self, attribute: str) -> bool:
        return attribute in self.force_new

    def is_computed(self, attribute: str) -> bool:
        return attribute in self.computed


@runtime_checkable
class Provider(Protocol):
    """
    Uniform capability interface over a remote API.

    Adapters translate their native errors into ``TransientProviderError``
    (retried by the executor) or ``PermanentProviderError``. A read of an
    object that no longer exists returns None.
    """

    @property
    def name(self) -> str:
        """Configured provider name (e.g., "aws")."""
        ...

    def schema(self, resource_type: str) -> ResourceSchema:
        """
        Attribute metadata for a resource type.

        Raises:
            UnsupportedResourceTypeError: If the type is unknown to this provider
        """
        ...

    async def read(
        self,
        resource_type: str,
        identifier: str,
        prior: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Read current remote attributes, or None if the object is gone."""
        ...

    async def create(self, resource_type: str, desired: dict[str, Any]) -> dict[str, Any]:
        """Create an object; returns its attributes including the identifier."""
        ...

    async def update(
        self,
        resource_type: str,
        identifier: str,
        diff: dict[str, AttributeChange],
        desired: dict[str, Any],
    ) -> dict[str, Any]:
        """Update an object in place; returns its new attributes."""
        ...

    async def destroy(self, resource_type: str, identifier: str) -> None:
        """Delete an object. Deleting an already-deleted object succeeds."""
        ...

    async def close(self) -> None:
        """Release connections. Safe to call multiple times."""
        ...


def schemas_from_options(options: dict[str, Any]) -> dict[str, ResourceSchema]:
    """Build schemas from a ``resource_types`` mapping in provider options."""
    raw = options.get("resource_types") or {}
    if not isinstance(raw, dict):
        raise ConfigurationError("provider resource_types must be a mapping")
    return {name: ResourceSchema.from_dict(name, body) for name, body in raw.items()}


def lookup_schema(
    provider: str, schemas: dict[str, ResourceSchema], resource_type: str
) -> ResourceSchema:
    """Find a schema or raise UnsupportedResourceTypeError."""
    try:
        return schemas[resource_type]
    except KeyError:
        raise UnsupportedResourceTypeError(provider, resource_type) from None


# Adapter kinds are imported lazily: the cloud and kubernetes adapters depend
# on optional extras (aioboto3, kubernetes_asyncio).
PROVIDER_KINDS: dict[str, str] = {
    "local": "stratum.providers.local:LocalProvider",
    "cloud": "stratum.providers.cloud:CloudProvider",
    "kubernetes": "stratum.providers.kubernetes:KubernetesProvider",
    "helm": "stratum.providers.helm:HelmProvider",
}


def _provider_class(kind: str) -> Any:
    target = PROVIDER_KINDS.get(kind)
    if target is None:
        raise ConfigurationError(
            f"Unknown provider kind '{kind}' (expected one of: {', '.join(sorted(PROVIDER_KINDS))})"
        )
    module_name, class_name = target.split(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(
            f"Provider kind '{kind}' requires an optional dependency: {e}. "
            f"Install with: pip install 'stratum[{kind}]'"
        ) from e
    return getattr(module, class_name)


class ProviderRegistry:
    """Configured providers keyed by name."""

    def __init__(self, providers: dict[str, Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = dict(providers or {})

    @classmethod
    def from_declarations(cls, declarations: dict[str, ProviderDecl]) -> ProviderRegistry:
        """Instantiate every declared provider."""
        providers: dict[str, Provider] = {}
        for name, decl in declarations.items():
            provider_cls = _provider_class(decl.kind)
            providers[name] = provider_cls(name, decl.options)
            logger.debug("Configured provider %s (kind=%s)", name, decl.kind)
        return cls(providers)

    def register(self, provider: Provider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str, address: str | None = None) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotFoundError(name, address) from None

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    @property
    def names(self) -> list[str]:
        return sorted(self._providers)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()

    async def __aenter__(self) -> ProviderRegistry:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
