"""Resource graph: build an immutable DAG of nodes from a configuration.

Variables are substituted, module inputs and outputs are inlined, and every
remaining reference becomes an edge between two nodes. Building fails with
``CycleError`` or ``UnresolvedReferenceError`` before any provider is called.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, TypeVar

from .config import Configuration, ModuleCall, ModuleConfig
from .exceptions import ConfigurationError, CycleError, UnresolvedReferenceError
from .expressions import (
    Reference,
    Symbol,
    Template,
    iter_expressions,
    lookup_path,
    substitute,
)
from .models import Address, Edge, ResourceNode

logger = logging.getLogger(__name__)

K = TypeVar("K", Address, str)


def find_cycle(nodes: Iterable[K], deps: dict[K, set[K]]) -> list[K] | None:
    """Return one dependency cycle (first node repeated at the end), or None."""
    white, grey, black = 0, 1, 2
    color = {n: white for n in nodes}
    for start in sorted(color):
        if color[start] != white:
            continue
        stack: list[tuple[K, list[K]]] = [(start, sorted(deps.get(start, ())))]
        path = [start]
        color[start] = grey
        while stack:
            node, pending = stack[-1]
            if not pending:
                stack.pop()
                path.pop()
                color[node] = black
                continue
            nxt = pending.pop(0)
            if color.get(nxt, black) == grey:
                return path[path.index(nxt) :] + [nxt]
            if color.get(nxt) == white:
                color[nxt] = grey
                path.append(nxt)
                stack.append((nxt, sorted(deps.get(nxt, ()))))
    return None


class ResourceGraph:
    """
    Immutable DAG of resource nodes.

    An edge (A, B) means A must be applied (or refreshed) before B.
    """

    def __init__(
        self,
        nodes: dict[Address, ResourceNode],
        edges: Iterable[Edge],
        outputs: dict[str, Any] | None = None,
    ) -> None:
        self._nodes = dict(nodes)
        self._edges = frozenset(edges)
        self._outputs = dict(outputs or {})
        self._deps: dict[Address, set[Address]] = {a: set() for a in self._nodes}
        self._dependents: dict[Address, set[Address]] = {a: set() for a in self._nodes}
        for edge in self._edges:
            self._deps[edge.target].add(edge.source)
            self._dependents[edge.source].add(edge.target)

        cycle = find_cycle(self._nodes, self._deps)
        if cycle:
            raise CycleError([str(a) for a in cycle])

    @property
    def nodes(self) -> MappingProxyType[Address, ResourceNode]:
        return MappingProxyType(self._nodes)

    @property
    def edges(self) -> frozenset[Edge]:
        return self._edges

    @property
    def outputs(self) -> MappingProxyType[str, Any]:
        """Root module outputs (values may hold deferred references)."""
        return MappingProxyType(self._outputs)

    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, address: Address) -> ResourceNode | None:
        return self._nodes.get(address)

    def find(self, text: str) -> ResourceNode | None:
        """Look a node up by its string address."""
        try:
            return self._nodes.get(Address.parse(text))
        except ValueError:
            return None

    def dependencies(self, address: Address) -> set[Address]:
        """Direct dependencies of a node."""
        return set(self._deps[address])

    def dependents(self, address: Address) -> set[Address]:
        """Nodes that directly depend on a node."""
        return set(self._dependents[address])

    def _closure(self, start: Iterable[Address], links: dict[Address, set[Address]]) -> set[Address]:
        seen: set[Address] = set()
        queue = list(start)
        while queue:
            current = queue.pop()
            for nxt in links.get(current, ()):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return seen

    def ancestors(self, addresses: Iterable[Address]) -> set[Address]:
        """All transitive dependencies of the given nodes."""
        return self._closure(addresses, self._deps)

    def descendants(self, addresses: Iterable[Address]) -> set[Address]:
        """All transitive dependents of the given nodes."""
        return self._closure(addresses, self._dependents)

    def topological_order(self) -> list[Address]:
        """Dependencies first; ties broken by address for determinism."""
        remaining = {a: len(d) for a, d in self._deps.items()}
        heap = [(str(a), a) for a, n in remaining.items() if n == 0]
        heapq.heapify(heap)
        order: list[Address] = []
        while heap:
            _, current = heapq.heappop(heap)
            order.append(current)
            for dependent in self._dependents[current]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(heap, (str(dependent), dependent))
        return order

    def reverse_order(self) -> list[Address]:
        """Dependents first (destroy order)."""
        return list(reversed(self.topological_order()))

    def to_dot(self) -> str:
        """Render the graph in Graphviz DOT format."""
        lines = ["digraph stratum {", "  rankdir = LR;"]
        for address in self.topological_order():
            shape = "note" if address.mode == "data" else "box"
            lines.append(f'  "{address}" [shape = {shape}];')
        for edge in sorted(self._edges, key=lambda e: (str(e.source), str(e.target))):
            lines.append(f'  "{edge.source}" -> "{edge.target}";')
        lines.append("}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@dataclass
class _Scope:
    """One module instance during graph building."""

    config: ModuleConfig
    path: tuple[str, ...]
    parent: _Scope | None = None
    call: ModuleCall | None = None
    root_values: dict[str, Any] = field(default_factory=dict)
    children: dict[str, _Scope] = field(default_factory=dict)
    sources: tuple[Path, ...] = ()

    @property
    def label(self) -> str:
        return ".".join(f"module.{m}" for m in self.path) or "root module"


class GraphBuilder:
    """Builds a ResourceGraph from a Configuration."""

    def __init__(self, configuration: Configuration) -> None:
        self._configuration = configuration
        self._nodes: dict[Address, ResourceNode] = {}
        self._root: _Scope | None = None
        self._var_cache: dict[tuple[tuple[str, ...], str], Any] = {}
        self._output_cache: dict[tuple[tuple[str, ...], str], Any] = {}
        self._in_progress: list[str] = []

    def build(self) -> ResourceGraph:
        """Build and validate the graph."""
        root_module = self._configuration.root
        root = _Scope(
            config=root_module,
            path=(),
            root_values=dict(self._configuration.variables),
            sources=(root_module.path.resolve(),),
        )
        self._root = root
        self._create_scopes(root)
        self._collect_nodes(root)
        outputs = {
            name: self._output(root, name, f"output.{name}") for name in root_module.outputs
        }

        edges: set[Edge] = set()
        for address, node in self._nodes.items():
            for ref in iter_expressions(node.attributes, Reference):
                if ref.address not in self._nodes:
                    raise UnresolvedReferenceError(str(ref), str(address), "no such resource")
                edges.add(Edge(ref.address, address))
            for target in node.depends_on:
                edges.add(Edge(target, address))

        for name, value in outputs.items():
            for ref in iter_expressions(value, Reference):
                if ref.address not in self._nodes:
                    raise UnresolvedReferenceError(str(ref), f"output.{name}", "no such resource")

        graph = ResourceGraph(self._nodes, edges, outputs)
        logger.debug("Built graph with %d nodes and %d edges", len(graph), len(graph.edges))
        return graph

    # -- scopes ----------------------------------------------------------------

    def _create_scopes(self, scope: _Scope) -> None:
        for name, call in scope.config.modules.items():
            child_config = self._configuration.child(scope.config, call)
            source = child_config.path.resolve()
            if source in scope.sources:
                chain = [str(s) for s in scope.sources[scope.sources.index(source) :]]
                raise CycleError(chain + [str(source)])
            unknown = set(call.inputs) - set(child_config.variables)
            if unknown:
                raise ConfigurationError(
                    f"module.{name}: inputs for undeclared variables: {', '.join(sorted(unknown))}"
                )
            child = _Scope(
                config=child_config,
                path=scope.path + (name,),
                parent=scope,
                call=call,
                sources=scope.sources + (source,),
            )
            scope.children[name] = child
            self._create_scopes(child)

    # -- nodes -------------------------------------------------------------------

    def _collect_nodes(self, scope: _Scope) -> None:
        for decl in scope.config.resources:
            try:
                address = Address(decl.resource_type, decl.name, scope.path, decl.mode)
            except ValueError as e:
                raise ConfigurationError(f"{scope.label}: {e}") from e
            if address in self._nodes:
                raise ConfigurationError(f"Duplicate resource address: {address}")
            attributes = self._resolve(decl.attributes, scope, str(address))
            provider = decl.provider or decl.resource_type.split("_", 1)[0]
            depends_on = self._resolve_depends_on(decl.depends_on, scope, str(address))
            inherited = self._module_depends_on(scope)
            self._nodes[address] = ResourceNode(
                address=address,
                provider=provider,
                attributes=attributes,
                lifecycle=decl.lifecycle,
                depends_on=tuple(sorted(set(depends_on) | inherited)),
            )
        for child in scope.children.values():
            self._collect_nodes(child)

    def _module_depends_on(self, scope: _Scope) -> set[Address]:
        """Explicit depends_on of every enclosing module call."""
        result: set[Address] = set()
        current = scope
        while current.parent is not None and current.call is not None:
            result |= set(
                self._resolve_depends_on(
                    current.call.depends_on, current.parent, f"module.{current.call.name}"
                )
            )
            current = current.parent
        return result

    def _resolve_depends_on(
        self, entries: tuple[str, ...], scope: _Scope, referrer: str
    ) -> list[Address]:
        targets: list[Address] = []
        for entry in entries:
            parts = entry.split(".")
            if len(parts) == 2 and parts[0] == "module":
                child = scope.children.get(parts[1])
                if child is None:
                    raise UnresolvedReferenceError(entry, referrer, "no such module")
                targets.extend(self._module_nodes(child))
                continue
            try:
                relative = Address.parse(entry)
            except ValueError as e:
                raise UnresolvedReferenceError(entry, referrer, str(e)) from e
            targets.append(
                Address(
                    relative.resource_type,
                    relative.name,
                    scope.path + relative.module_path,
                    relative.mode,
                )
            )
        for target in targets:
            if not self._declared(target):
                raise UnresolvedReferenceError(str(target), referrer, "no such resource")
        return targets

    def _module_nodes(self, scope: _Scope) -> list[Address]:
        found = [
            Address(d.resource_type, d.name, scope.path, d.mode) for d in scope.config.resources
        ]
        for child in scope.children.values():
            found.extend(self._module_nodes(child))
        if not found:
            raise UnresolvedReferenceError(scope.label, None, "module declares no resources")
        return found

    def _scope_for(self, path: tuple[str, ...]) -> _Scope | None:
        scope: _Scope | None = self._root
        for name in path:
            if scope is None:
                return None
            scope = scope.children.get(name)
        return scope

    def _declared(self, address: Address) -> bool:
        scope = self._scope_for(address.module_path)
        if scope is None:
            return False
        return any(
            d.resource_type == address.resource_type
            and d.name == address.name
            and d.mode == address.mode
            for d in scope.config.resources
        )

    # -- expression resolution ---------------------------------------------------

    def _resolve(self, value: Any, scope: _Scope, referrer: str) -> Any:
        return substitute(value, lambda sym: self._resolve_symbol(sym, scope, referrer), Symbol)

    def _resolve_symbol(self, symbol: Symbol, scope: _Scope, referrer: str) -> Any:
        segs = symbol.segments
        head = segs[0]

        if head == "var":
            if len(segs) < 2 or not isinstance(segs[1], str):
                raise UnresolvedReferenceError(symbol.text, referrer, "expected var.NAME")
            value = self._variable(scope, segs[1], symbol.text, referrer)
            return self._descend(value, segs[2:], symbol.text, referrer)

        if head == "module":
            if len(segs) < 3 or not all(isinstance(s, str) for s in segs[1:3]):
                raise UnresolvedReferenceError(symbol.text, referrer, "expected module.NAME.OUTPUT")
            child = scope.children.get(str(segs[1]))
            if child is None:
                raise UnresolvedReferenceError(symbol.text, referrer, "no such module")
            value = self._output(child, str(segs[2]), symbol.text)
            return self._descend(value, segs[3:], symbol.text, referrer)

        mode = "managed"
        if head == "data":
            mode = "data"
            segs = segs[1:]
        if len(segs) < 2 or not all(isinstance(s, str) for s in segs[:2]):
            raise UnresolvedReferenceError(symbol.text, referrer, "expected TYPE.NAME")
        try:
            address = Address(str(segs[0]), str(segs[1]), scope.path, mode)
        except ValueError as e:
            raise UnresolvedReferenceError(symbol.text, referrer, str(e)) from e
        return Reference(address, tuple(segs[2:]))

    def _descend(self, value: Any, rest: tuple[Any, ...], text: str, referrer: str) -> Any:
        if not rest:
            return value
        if isinstance(value, Reference):
            return Reference(value.address, value.path + tuple(rest))
        if isinstance(value, Template):
            raise UnresolvedReferenceError(text, referrer, "cannot index into a string")
        try:
            return lookup_path(value, tuple(rest))
        except KeyError as e:
            raise UnresolvedReferenceError(text, referrer, f"no element {e}") from e

    def _guard(self, key: str) -> None:
        if key in self._in_progress:
            start = self._in_progress.index(key)
            raise CycleError(self._in_progress[start:] + [key])
        self._in_progress.append(key)

    def _variable(self, scope: _Scope, name: str, text: str, referrer: str) -> Any:
        cache_key = (scope.path, name)
        if cache_key in self._var_cache:
            return self._var_cache[cache_key]
        if name not in scope.config.variables:
            raise UnresolvedReferenceError(text, referrer, f"variable not declared in {scope.label}")

        call, parent = scope.call, scope.parent
        if call is None or parent is None:
            value = scope.root_values[name]
        else:
            label = ".".join([*(f"module.{m}" for m in scope.path), f"var.{name}"])
            self._guard(label)
            try:
                if name in call.inputs:
                    value = self._resolve(call.inputs[name], parent, f"module.{call.name}")
                elif not scope.config.variables[name].required:
                    value = scope.config.variables[name].default
                else:
                    raise ConfigurationError(
                        f"module.{call.name}: no value for required variable '{name}'"
                    )
            finally:
                self._in_progress.pop()
        self._var_cache[cache_key] = value
        return value

    def _output(self, scope: _Scope, name: str, text: str) -> Any:
        cache_key = (scope.path, name)
        if cache_key in self._output_cache:
            return self._output_cache[cache_key]
        decl = scope.config.outputs.get(name)
        if decl is None:
            raise UnresolvedReferenceError(text, None, f"{scope.label} has no output '{name}'")
        label = ".".join([*(f"module.{m}" for m in scope.path), f"output.{name}"])
        self._guard(label)
        try:
            value = self._resolve(decl.value, scope, label)
        finally:
            self._in_progress.pop()
        self._output_cache[cache_key] = value
        return value


def build_graph(configuration: Configuration) -> ResourceGraph:
    """Build the resource graph for a configuration."""
    builder = GraphBuilder(configuration)
    return builder.build()
