"""State store protocol and shared helpers.

A state store persists one StateDocument and guards it with a lock held for
the duration of a run. Backends implement the StateStore protocol; the
engine and executor never depend on a concrete backend.
"""

from __future__ import annotations

import getpass
import logging
import socket
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from ..exceptions import IncompatibleStateError, LockConflictError, StateError
from ..models import StateDocument
from ..version import CURRENT_STATE_VERSION, check_state_compatibility

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockInfo:
    """
    Metadata written by the lock holder.

    Attributes:
        id: Lock ID (needed to force-unlock)
        operation: Command that took the lock (plan, apply, destroy, ...)
        who: user@host of the holder
        created: ISO timestamp when the lock was taken
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = ""
    who: str = ""
    created: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @classmethod
    def new(cls, operation: str) -> LockInfo:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        return cls(operation=operation, who=f"{user}@{socket.gethostname()}")

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "operation": self.operation, "who": self.who, "created": self.created}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> LockInfo:
        return cls(
            id=d.get("id", ""),
            operation=d.get("operation", ""),
            who=d.get("who", ""),
            created=d.get("created", ""),
        )


@runtime_checkable
class StateStore(Protocol):
    """
    Durable storage for the state document.

    ``save`` is transactional: after it returns the new document is durable,
    and a failed or concurrent write never replaces durable state with a
    partial one. The document's serial must be exactly one more than the
    stored serial.
    """

    def load(self) -> StateDocument:
        """Load the document (an empty one if nothing is stored yet)."""
        ...

    def save(self, document: StateDocument) -> None:
        """Persist the document."""
        ...

    def lock(self, info: LockInfo) -> LockInfo:
        """
        Take the state lock.

        Raises:
            LockConflictError: If another execution holds the lock
        """
        ...

    def unlock(self, lock_id: str) -> None:
        """Release a lock taken by this process."""
        ...

    def force_unlock(self, lock_id: str) -> None:
        """Break a lock left behind by a crashed run."""
        ...

    def describe(self) -> str:
        """Human-readable location of the state."""
        ...


def decode_document(data: dict[str, Any]) -> StateDocument:
    """
    Build a StateDocument from its stored form, checking the version tag.

    Raises:
        IncompatibleStateError: If the document's schema version is incompatible
        StateError: If the document is malformed
    """
    if not isinstance(data, dict):
        raise StateError("State document must be a JSON object")
    version = str(data.get("version", ""))
    if not version:
        raise StateError("State document has no version tag")
    result = check_state_compatibility(version)
    if not result.is_compatible:
        raise IncompatibleStateError(CURRENT_STATE_VERSION, version, result.message)
    try:
        document = StateDocument.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise StateError(f"Malformed state document: {e}") from e
    # older compatible documents are upgraded on the next save
    document.version = CURRENT_STATE_VERSION
    return document


def acquire_lock(
    store: StateStore,
    operation: str,
    timeout: float = 0.0,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> LockInfo:
    """
    Take the lock, retrying a held lock until ``timeout`` seconds elapse.

    Raises:
        LockConflictError: If the lock is still held when the timeout expires
    """
    deadline = time.monotonic() + timeout
    while True:
        try:
            info = store.lock(LockInfo.new(operation))
            logger.debug("Acquired state lock %s for %s", info.id, operation)
            return info
        except LockConflictError:
            if time.monotonic() >= deadline:
                raise
            logger.info("State is locked, retrying in %.1fs", interval)
            sleep(interval)
