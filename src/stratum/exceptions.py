"""Exceptions for stratum."""

from typing import Any

# ---------------------------------------------------------------------------
# Base Exception
# ---------------------------------------------------------------------------


class StratumError(Exception):
    """
    Base exception for all stratum errors.

    All exceptions raised by this library inherit from this class,
    allowing callers to catch all library-specific errors with a single
    except clause.
    """

    pass


# ---------------------------------------------------------------------------
# Category Exceptions
# ---------------------------------------------------------------------------


class ConfigurationError(StratumError):
    """
    Base exception for configuration and graph-build errors.

    Raised before any provider call is made: the configuration could not be
    parsed, resolved into a graph, or planned safely.
    """

    pass


class StateError(StratumError):
    """
    Base exception for state store errors.

    This includes lock conflicts, incompatible state documents and rejected
    concurrent writes.
    """

    pass


class ExecutionError(StratumError):
    """
    Base exception for errors raised while applying a change set.

    Execution errors are recorded against a single node; they never abort
    independent branches of the graph.
    """

    pass


class ProviderError(StratumError):
    """
    Base exception for provider adapter errors.

    Adapters translate their native errors (botocore, Kubernetes API, helm
    exit codes) into one of the subclasses below.
    """

    pass


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(StratumError):
    """Raised when a setting or identifier fails validation."""

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}: {value!r}: {reason}")


# ---------------------------------------------------------------------------
# Configuration Exceptions
# ---------------------------------------------------------------------------


class CycleError(ConfigurationError):
    """
    Raised when resource dependencies form a cycle.

    Attributes:
        cycle: Addresses along the cycle, first address repeated at the end
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")


class UnresolvedReferenceError(ConfigurationError):
    """
    Raised when an expression references something that does not exist.

    Attributes:
        reference: The reference text (e.g., 'aws_vpc.main.id')
        referrer: Where the reference appears (address or output name)
    """

    def __init__(self, reference: str, referrer: str | None = None, reason: str = "") -> None:
        self.reference = reference
        self.referrer = referrer
        msg = f"Unresolved reference '{reference}'"
        if referrer:
            msg += f" in {referrer}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PreventDestroyError(ConfigurationError):
    """Raised when a plan would destroy a resource with prevent_destroy set."""

    def __init__(self, address: str, action: str) -> None:
        self.address = address
        self.action = action
        super().__init__(
            f"Resource {address} has lifecycle.prevent_destroy set, "
            f"but the plan calls for it to be {action}d"
        )


# ---------------------------------------------------------------------------
# State Exceptions
# ---------------------------------------------------------------------------


class LockConflictError(StateError):
    """
    Raised when another execution holds the state lock.

    Attributes:
        lock_id: ID of the lock currently held
        info: Lock metadata written by the holder (operation, who, created)
    """

    def __init__(self, lock_id: str | None, info: dict[str, Any] | None = None) -> None:
        self.lock_id = lock_id
        self.info = info or {}
        msg = "State is locked by another execution"
        details = []
        if lock_id:
            details.append(f"id={lock_id}")
        for key in ("operation", "who", "created"):
            if self.info.get(key):
                details.append(f"{key}={self.info[key]}")
        if details:
            msg += f" [{', '.join(details)}]"
        super().__init__(msg)


class LockNotHeldError(StateError):
    """Raised when unlocking with an ID that does not match the held lock."""

    def __init__(self, lock_id: str, held_id: str | None) -> None:
        self.lock_id = lock_id
        self.held_id = held_id
        super().__init__(f"Lock {lock_id} is not held (current lock: {held_id or 'none'})")


class IncompatibleStateError(StateError):
    """
    Raised when the state document was written by an incompatible schema.

    Attributes:
        client_version: State schema version this client writes
        state_version: Version tag found in the stored document
    """

    def __init__(self, client_version: str, state_version: str, message: str) -> None:
        self.client_version = client_version
        self.state_version = state_version
        super().__init__(
            f"Incompatible state: client schema {client_version} cannot read "
            f"state schema {state_version}. {message}"
        )


class StateConflictError(StateError):
    """Raised when a state write loses a race with another writer."""

    def __init__(self, expected_serial: int, message: str = "") -> None:
        self.expected_serial = expected_serial
        msg = f"State was modified concurrently (expected serial {expected_serial})"
        if message:
            msg += f": {message}"
        super().__init__(msg)


# ---------------------------------------------------------------------------
# Execution Exceptions
# ---------------------------------------------------------------------------


class DependencyExistsError(ExecutionError):
    """
    Raised when a destroy is blocked by resources still referencing the node.

    Attributes:
        address: The resource that could not be destroyed
        dependents: Live resources whose state still references it
    """

    def __init__(self, address: str, dependents: list[str]) -> None:
        self.address = address
        self.dependents = dependents
        super().__init__(
            f"Cannot destroy {address}: still referenced by {', '.join(dependents)}"
        )


class ApplyCancelledError(ExecutionError):
    """Recorded against operations that never started because the run was cancelled."""

    def __init__(self) -> None:
        super().__init__("Run cancelled before this operation started")


class IncompleteReplacementError(ExecutionError):
    """
    Recorded against a replacement when the run stopped after only one half.

    Attributes:
        address: The replaced resource
        completed: The half that ran, "create" or "destroy"
    """

    def __init__(self, address: str, completed: str) -> None:
        self.address = address
        self.completed = completed
        if completed == "create":
            detail = "replacement created, old object kept as deposed until destroyed"
        else:
            detail = "old object destroyed, replacement not created"
        super().__init__(f"Replacement of {address} stopped after {completed}: {detail}")


# ---------------------------------------------------------------------------
# Provider Exceptions
# ---------------------------------------------------------------------------


class ProviderNotFoundError(ProviderError):
    """Raised when a resource is bound to a provider that is not configured."""

    def __init__(self, provider: str, address: str | None = None) -> None:
        self.provider = provider
        self.address = address
        msg = f"Provider '{provider}' is not configured"
        if address:
            msg += f" (required by {address})"
        super().__init__(msg)


class UnsupportedResourceTypeError(ProviderError):
    """Raised when a provider has no schema for a resource type."""

    def __init__(self, provider: str, resource_type: str) -> None:
        self.provider = provider
        self.resource_type = resource_type
        super().__init__(f"Provider '{provider}' does not support resource type '{resource_type}'")


class TransientProviderError(ProviderError):
    """
    A provider call failed in a way that may succeed on retry.

    Timeouts, throttling and conflicting in-progress operations fall here.

    Attributes:
        code: Provider-specific error code, if any
        cause: The underlying exception
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.code = code
        self.cause = cause
        super().__init__(f"{message} [{code}]" if code else message)


class PermanentProviderError(ProviderError):
    """
    A provider call failed in a way retrying cannot fix.

    Validation and permission errors fall here; the node is marked failed.

    Attributes:
        code: Provider-specific error code, if any
        cause: The underlying exception
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.code = code
        self.cause = cause
        super().__init__(f"{message} [{code}]" if code else message)
