"""Local provider: objects kept in process memory, optionally persisted to JSON.

Useful for composing configuration without a remote API, and as the
reference adapter in tests. Resource types are declared in the provider
options; undeclared types are accepted with every attribute updatable.

    providers:
      local:
        kind: local
        path: .stratum/local-objects.json
        resource_types:
          network:
            force_new: [cidr]
            computed: [subnet_id]
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from ..exceptions import PermanentProviderError
from ..models import AttributeChange
from .base import ResourceSchema, schemas_from_options

logger = logging.getLogger(__name__)


class LocalProvider:
    """In-process implementation of the Provider protocol."""

    def __init__(self, name: str = "local", options: dict[str, Any] | None = None) -> None:
        options = options or {}
        self._name = name
        self._schemas = schemas_from_options(options)
        self._path = Path(options["path"]) if options.get("path") else None
        self._objects: dict[str, dict[str, dict[str, Any]]] = {}
        self._last_sequence = 0
        if self._path is not None and self._path.exists():
            with open(self._path) as f:
                data = json.load(f)
            self._objects = data.get("objects", {})
            self._last_sequence = int(data.get("sequence", 0))

    @property
    def name(self) -> str:
        return self._name

    def schema(self, resource_type: str) -> ResourceSchema:
        return self._schemas.get(resource_type) or ResourceSchema(
            resource_type=resource_type, computed=frozenset({"id"})
        )

    def objects(self, resource_type: str) -> dict[str, dict[str, Any]]:
        """Snapshot of stored objects of one type, keyed by identifier."""
        return copy.deepcopy(self._objects.get(resource_type, {}))

    async def read(
        self,
        resource_type: str,
        identifier: str,
        prior: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        obj = self._objects.get(resource_type, {}).get(identifier)
        return copy.deepcopy(obj) if obj is not None else None

    async def create(self, resource_type: str, desired: dict[str, Any]) -> dict[str, Any]:
        schema = self.schema(resource_type)
        self._last_sequence += 1
        identifier = f"{resource_type}-{self._last_sequence}"
        attrs = copy.deepcopy(desired)
        for attr in sorted(schema.computed):
            if attr not in attrs:
                attrs[attr] = f"{identifier}/{attr}"
        attrs[schema.identifier] = identifier
        self._objects.setdefault(resource_type, {})[identifier] = attrs
        self._save()
        logger.debug("%s: created %s %s", self._name, resource_type, identifier)
        return copy.deepcopy(attrs)

    async def update(
        self,
        resource_type: str,
        identifier: str,
        diff: dict[str, AttributeChange],
        desired: dict[str, Any],
    ) -> dict[str, Any]:
        schema = self.schema(resource_type)
        current = self._objects.get(resource_type, {}).get(identifier)
        if current is None:
            raise PermanentProviderError(f"{resource_type} {identifier} does not exist", "NotFound")
        attrs = {k: v for k, v in current.items() if schema.is_computed(k)}
        attrs.update(copy.deepcopy(desired))
        self._objects[resource_type][identifier] = attrs
        self._save()
        logger.debug("%s: updated %s %s (%s)", self._name, resource_type, identifier, ", ".join(diff))
        return copy.deepcopy(attrs)

    async def destroy(self, resource_type: str, identifier: str) -> None:
        self._objects.get(resource_type, {}).pop(identifier, None)
        self._save()
        logger.debug("%s: destroyed %s %s", self._name, resource_type, identifier)

    async def close(self) -> None:
        pass

    def _save(self) -> None:
        if self._path is None:
            return
        data = {"sequence": self._last_sequence, "objects": self._objects}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp, self._path)
