"""
stratum: declarative infrastructure provisioning.

This library provides a provisioning engine with:
- YAML configuration with variables, modules and cross-resource references
- An immutable dependency graph (cycle and reference checks before any call)
- Plan/apply reconciliation against versioned, locked state
- A bounded-concurrency executor with retries and failure isolation
- Pluggable providers via the Provider protocol (local, cloud, Kubernetes, Helm)

Example:
    from stratum import Engine, RunOptions

    engine = Engine.from_directory("infra/", options=RunOptions(parallelism=4))
    plan, report = await engine.apply()
"""

# ---------------------------------------------------------------------------
# Provider adapters are imported lazily via __getattr__ below: the cloud and
# kubernetes adapters depend on optional extras (aioboto3,
# kubernetes_asyncio) that the core engine must import without.
# ---------------------------------------------------------------------------
from typing import TYPE_CHECKING

from .config import Configuration, load_configuration
from .engine import Engine, Session
from .exceptions import (
    ApplyCancelledError,
    ConfigurationError,
    CycleError,
    DependencyExistsError,
    ExecutionError,
    IncompatibleStateError,
    IncompleteReplacementError,
    LockConflictError,
    LockNotHeldError,
    PermanentProviderError,
    PreventDestroyError,
    ProviderError,
    ProviderNotFoundError,
    StateConflictError,
    StateError,
    StratumError,
    TransientProviderError,
    UnresolvedReferenceError,
    UnsupportedResourceTypeError,
    ValidationError,
)
from .executor import ApplyReport, Executor, NodeResult
from .graph import ResourceGraph, build_graph
from .models import (
    UNKNOWN,
    Action,
    Address,
    AttributeChange,
    Change,
    ChangeReason,
    Lifecycle,
    NodeStatus,
    ResourceNode,
    StateDocument,
    StateRecord,
)
from .planner import Plan, Planner
from .providers.base import Provider, ProviderRegistry, ResourceSchema
from .providers.local import LocalProvider
from .settings import RunOptions
from .state import LocalStateStore, LockInfo, StateStore

if TYPE_CHECKING:
    from .providers.cloud import CloudProvider as CloudProvider
    from .providers.helm import HelmProvider as HelmProvider
    from .providers.kubernetes import KubernetesProvider as KubernetesProvider
    from .state.dynamodb import DynamoDBStateStore as DynamoDBStateStore

try:
    from ._version import __version__  # type: ignore[import-not-found]
except ImportError:
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Main classes
    "Engine",
    "Session",
    "Planner",
    "Plan",
    "Executor",
    "ApplyReport",
    "NodeResult",
    "RunOptions",
    # Configuration and graph
    "Configuration",
    "load_configuration",
    "ResourceGraph",
    "build_graph",
    # Models
    "Address",
    "Lifecycle",
    "ResourceNode",
    "StateRecord",
    "StateDocument",
    "AttributeChange",
    "Change",
    "Action",
    "ChangeReason",
    "NodeStatus",
    "UNKNOWN",
    # State
    "StateStore",
    "LocalStateStore",
    "DynamoDBStateStore",
    "LockInfo",
    # Providers
    "Provider",
    "ProviderRegistry",
    "ResourceSchema",
    "LocalProvider",
    "CloudProvider",
    "KubernetesProvider",
    "HelmProvider",
    # Exceptions - Base
    "StratumError",
    # Exceptions - Categories
    "ConfigurationError",
    "StateError",
    "ExecutionError",
    "ProviderError",
    # Exceptions - Configuration
    "CycleError",
    "UnresolvedReferenceError",
    "PreventDestroyError",
    # Exceptions - State
    "LockConflictError",
    "LockNotHeldError",
    "IncompatibleStateError",
    "StateConflictError",
    # Exceptions - Execution
    "DependencyExistsError",
    "ApplyCancelledError",
    "IncompleteReplacementError",
    # Exceptions - Provider
    "ProviderNotFoundError",
    "UnsupportedResourceTypeError",
    "TransientProviderError",
    "PermanentProviderError",
    # Exceptions - Validation
    "ValidationError",
]

_LAZY = {
    "CloudProvider": ("stratum.providers.cloud", "CloudProvider"),
    "KubernetesProvider": ("stratum.providers.kubernetes", "KubernetesProvider"),
    "HelmProvider": ("stratum.providers.helm", "HelmProvider"),
    "DynamoDBStateStore": ("stratum.state.dynamodb", "DynamoDBStateStore"),
}


def __getattr__(name: str) -> type:
    """Lazy import for classes that need optional dependencies.

    See Also:
        PEP 562 -- Module __getattr__ and __dir__
    """
    if name in _LAZY:
        import importlib

        module_name, attr = _LAZY[name]
        return getattr(importlib.import_module(module_name), attr)  # type: ignore[no-any-return]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
