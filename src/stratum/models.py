"""Core models for stratum."""

from __future__ import annotations

import copy
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .version import CURRENT_STATE_VERSION


class Action(str, Enum):
    """Action planned for a single node."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    READ = "read"
    NOOP = "no-op"


class ChangeReason(str, Enum):
    """Why a change was planned."""

    CONFIG = "config"  # explicit edit of the configuration
    DRIFT = "drift"  # remote object diverged from recorded state
    REMOVED = "removed"  # no longer declared
    DEPOSED = "deposed"  # old object of an unfinished create_before_destroy replacement


class NodeStatus(str, Enum):
    """Execution status of a node during apply."""

    PENDING = "pending"
    PLANNED = "planned"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unknown:
        return self


UNKNOWN = _Unknown()


def contains_unknown(value: Any) -> bool:
    """Return True if UNKNOWN appears anywhere inside value."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list | tuple):
        return any(contains_unknown(v) for v in value)
    return False


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


@dataclass(frozen=True)
class Address:
    """
    Unique key of a node: module path + resource type + logical name.

    String forms:
        aws_vpc.main
        data.aws_ami.default
        module.network.aws_subnet.private
        module.platform.module.network.aws_vpc.main

    Attributes:
        resource_type: Provider resource type (e.g., "aws_vpc")
        name: Logical name within the module
        module_path: Names of enclosing modules, outermost first
        mode: "managed" for resources, "data" for data sources
    """

    resource_type: str
    name: str
    module_path: tuple[str, ...] = ()
    mode: str = "managed"

    def __post_init__(self) -> None:
        for part in (self.resource_type, self.name, *self.module_path):
            if not _IDENT.match(part):
                raise ValueError(f"Invalid address component: {part!r}")
        if self.mode not in ("managed", "data"):
            raise ValueError(f"Invalid address mode: {self.mode!r}")

    def __str__(self) -> str:
        parts = [f"module.{m}" for m in self.module_path]
        if self.mode == "data":
            parts.append("data")
        parts.append(self.resource_type)
        parts.append(self.name)
        return ".".join(parts)

    def __lt__(self, other: Address) -> bool:
        return str(self) < str(other)

    @property
    def module_prefix(self) -> str:
        """Module part of the address ('' for the root module)."""
        return ".".join(f"module.{m}" for m in self.module_path)

    def in_module(self, module_path: tuple[str, ...]) -> bool:
        """True if this node lives in module_path or one of its children."""
        return self.module_path[: len(module_path)] == module_path

    @classmethod
    def parse(cls, text: str) -> Address:
        """Parse the string form of an address."""
        parts = text.split(".")
        module_path: list[str] = []
        while len(parts) >= 2 and parts[0] == "module":
            module_path.append(parts[1])
            parts = parts[2:]
        mode = "managed"
        if parts and parts[0] == "data":
            mode = "data"
            parts = parts[1:]
        if len(parts) != 2:
            raise ValueError(f"Invalid resource address: {text!r}")
        return cls(
            resource_type=parts[0],
            name=parts[1],
            module_path=tuple(module_path),
            mode=mode,
        )


# ---------------------------------------------------------------------------
# Graph models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Lifecycle:
    """Lifecycle flags of a resource."""

    create_before_destroy: bool = False
    prevent_destroy: bool = False

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> Lifecycle:
        d = d or {}
        unknown = set(d) - {"create_before_destroy", "prevent_destroy"}
        if unknown:
            raise ValueError(f"Unknown lifecycle settings: {', '.join(sorted(unknown))}")
        return cls(
            create_before_destroy=bool(d.get("create_before_destroy", False)),
            prevent_destroy=bool(d.get("prevent_destroy", False)),
        )

    def to_dict(self) -> dict[str, bool]:
        return {
            "create_before_destroy": self.create_before_destroy,
            "prevent_destroy": self.prevent_destroy,
        }


@dataclass(frozen=True)
class ResourceNode:
    """
    A resource or data source in the built graph.

    ``attributes`` holds the desired attribute set; values are plain data or
    deferred expressions (``Reference``/``Template``) pointing at other nodes.
    """

    address: Address
    provider: str
    attributes: dict[str, Any]
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    depends_on: tuple[Address, ...] = ()

    @property
    def resource_type(self) -> str:
        return self.address.resource_type

    @property
    def is_data(self) -> bool:
        return self.address.mode == "data"


@dataclass(frozen=True)
class Edge:
    """Dependency edge: ``source`` is applied before ``target``."""

    source: Address
    target: Address


# ---------------------------------------------------------------------------
# State models
# ---------------------------------------------------------------------------


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class StateRecord:
    """
    Last-known real-world attributes of one resource.

    Attributes:
        address: String form of the resource address
        resource_type: Provider resource type
        provider: Provider name the resource is bound to
        identifier: Provider-assigned identifier
        attributes: Last-applied attributes (desired values plus computed ones)
        dependencies: Addresses this resource referenced when last applied
        lifecycle: Lifecycle flags at the time of the last apply
        updated_at: ISO timestamp of the last commit
    """

    address: str
    resource_type: str
    provider: str
    identifier: str
    attributes: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    updated_at: str = field(default_factory=_now)

    @property
    def is_data(self) -> bool:
        return Address.parse(self.address).mode == "data"

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "resource_type": self.resource_type,
            "provider": self.provider,
            "identifier": self.identifier,
            "attributes": self.attributes,
            "dependencies": sorted(self.dependencies),
            "lifecycle": self.lifecycle.to_dict(),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> StateRecord:
        return cls(
            address=d["address"],
            resource_type=d["resource_type"],
            provider=d["provider"],
            identifier=d["identifier"],
            attributes=d.get("attributes", {}),
            dependencies=list(d.get("dependencies", [])),
            lifecycle=Lifecycle.from_dict(d.get("lifecycle")),
            updated_at=d.get("updated_at") or _now(),
        )


@dataclass
class StateDocument:
    """
    Versioned document holding all state records.

    Attributes:
        version: State schema version tag
        serial: Incremented on every save
        lineage: Identity of this state's history, fixed at creation
        records: State records keyed by address string
        outputs: Root module output values from the last apply
        deposed: Old objects of create_before_destroy replacements whose
            destroy has not been confirmed yet
    """

    version: str = CURRENT_STATE_VERSION
    serial: int = 0
    lineage: str = field(default_factory=lambda: str(uuid.uuid4()))
    records: dict[str, StateRecord] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    deposed: list[StateRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "serial": self.serial,
            "lineage": self.lineage,
            "records": {addr: rec.to_dict() for addr, rec in sorted(self.records.items())},
            "outputs": self.outputs,
            "deposed": [
                rec.to_dict()
                for rec in sorted(self.deposed, key=lambda r: (r.address, r.identifier))
            ],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> StateDocument:
        records = {addr: StateRecord.from_dict(rec) for addr, rec in d.get("records", {}).items()}
        return cls(
            version=d.get("version", CURRENT_STATE_VERSION),
            serial=int(d.get("serial", 0)),
            lineage=d.get("lineage") or str(uuid.uuid4()),
            records=records,
            outputs=d.get("outputs", {}),
            deposed=[StateRecord.from_dict(rec) for rec in d.get("deposed", [])],
        )

    def copy(self) -> StateDocument:
        return copy.deepcopy(self)

    def depose(self, address: str) -> StateRecord | None:
        """Move the record at address to the deposed list and return it."""
        record = self.records.pop(address, None)
        if record is not None:
            self.deposed.append(record)
        return record

    def forget(self, address: str, identifier: str) -> None:
        """Drop a destroyed object, whether it is current or deposed."""
        current = self.records.get(address)
        if current is not None and current.identifier == identifier:
            del self.records[address]
        self.deposed = [
            r for r in self.deposed if (r.address, r.identifier) != (address, identifier)
        ]

    def dependents_of(self, address: str) -> list[str]:
        """Addresses of records whose recorded dependencies include address."""
        return sorted(a for a, rec in self.records.items() if address in rec.dependencies)


# ---------------------------------------------------------------------------
# Plan models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AttributeChange:
    """Old/new value of one attribute in a change."""

    old: Any
    new: Any
    forces_replacement: bool = False


@dataclass(frozen=True)
class Change:
    """
    A single ChangeSet entry.

    Attributes:
        address: Node address
        action: Planned action
        diff: Attribute changes keyed by attribute name
        reason: Why the change is needed
        create_before_destroy: For replacements, create the new object first
        provider: Provider name the node is bound to
        resource_type: Provider resource type
        deposed: Identifier of the deposed object this destroy removes
    """

    address: Address
    action: Action
    diff: dict[str, AttributeChange] = field(default_factory=dict)
    reason: ChangeReason = ChangeReason.CONFIG
    create_before_destroy: bool = False
    provider: str = ""
    resource_type: str = ""
    deposed: str | None = None

    @property
    def key(self) -> str:
        """Unique key of this entry in the ChangeSet and the apply report."""
        if self.deposed is not None:
            return f"{self.address} (deposed {self.deposed})"
        return str(self.address)

    @property
    def replaced_by(self) -> list[str]:
        """Attributes that force this change to be a replacement."""
        return sorted(k for k, c in self.diff.items() if c.forces_replacement)
