"""Local file state backend.

The document is written to a temp file in the same directory, fsynced and
renamed into place; the previous document is kept as ``<path>.backup``.
The lock is a ``<path>.lock`` file created exclusively.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path

from ..exceptions import LockConflictError, LockNotHeldError, StateConflictError, StateError
from ..models import StateDocument
from .store import LockInfo, decode_document

logger = logging.getLogger(__name__)


class LocalStateStore:
    """State kept in a JSON file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._path.with_name(self._path.name + ".lock")

    @property
    def backup_path(self) -> Path:
        return self._path.with_name(self._path.name + ".backup")

    def describe(self) -> str:
        return str(self._path)

    def _read(self) -> dict | None:
        try:
            with open(self._path) as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise StateError(f"State file {self._path} is not valid JSON: {e}") from e

    def load(self) -> StateDocument:
        data = self._read()
        if data is None:
            logger.debug("No state at %s, starting empty", self._path)
            return StateDocument()
        return decode_document(data)

    def save(self, document: StateDocument) -> None:
        existing = self._read()
        if existing is not None:
            if existing.get("lineage") != document.lineage:
                raise StateConflictError(
                    document.serial - 1,
                    f"lineage {existing.get('lineage')} does not match {document.lineage}",
                )
            if int(existing.get("serial", 0)) != document.serial - 1:
                raise StateConflictError(document.serial - 1, f"found serial {existing.get('serial')}")

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document.to_dict(), f, indent=2, sort_keys=True)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            if existing is not None:
                shutil.copyfile(self._path, self.backup_path)
            os.replace(tmp, self._path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug("Saved state serial %d to %s", document.serial, self._path)

    def _held(self) -> LockInfo | None:
        try:
            with open(self.lock_path) as f:
                return LockInfo.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            return LockInfo(id="", operation="unknown")

    def lock(self, info: LockInfo) -> LockInfo:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            held = self._held()
            raise LockConflictError(
                held.id if held else None, held.to_dict() if held else None
            ) from None
        with os.fdopen(fd, "w") as f:
            json.dump(info.to_dict(), f)
        return info

    def unlock(self, lock_id: str) -> None:
        held = self._held()
        if held is None or held.id != lock_id:
            raise LockNotHeldError(lock_id, held.id if held else None)
        self.lock_path.unlink()
        logger.debug("Released state lock %s", lock_id)

    def force_unlock(self, lock_id: str) -> None:
        logger.warning("Force-unlocking state lock %s at %s", lock_id, self.lock_path)
        self.unlock(lock_id)
