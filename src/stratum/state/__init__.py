"""State store backends."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from ..exceptions import ConfigurationError
from .local import LocalStateStore
from .store import LockInfo, StateStore, acquire_lock, decode_document

if TYPE_CHECKING:
    from ..config import BackendDecl
    from ..settings import RunOptions

__all__ = [
    "LocalStateStore",
    "LockInfo",
    "StateStore",
    "acquire_lock",
    "decode_document",
    "open_store",
]


def open_store(
    backend: BackendDecl | None,
    options: RunOptions,
    base_dir: Path,
) -> StateStore:
    """
    Create the state store for a configuration.

    Without a ``backend`` block, state lives in ``options.state_path``
    (relative to the configuration directory).
    """
    if backend is None or backend.type == "local":
        path = Path((backend.options.get("path") if backend else None) or options.state_path)
        if not path.is_absolute():
            path = base_dir / path
        return LocalStateStore(path)
    if backend.type == "dynamodb":
        # boto3 is only needed for this backend
        from .dynamodb import DynamoDBStateStore

        return DynamoDBStateStore.from_options(backend.options)
    raise ConfigurationError(f"Unknown state backend '{backend.type}' (expected local or dynamodb)")
