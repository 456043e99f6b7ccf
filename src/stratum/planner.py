"""Diff/plan engine.

Compares the desired attributes of every node with its state record and
produces an ordered ChangeSet:

- no record                         -> create
- no differing attributes           -> no-op
- only updatable attributes differ  -> update
- any forces-replacement attribute  -> replace
- record without a node             -> destroy
- deposed object                    -> destroy

Values that reference a dependency created or replaced in the same plan are
UNKNOWN until apply; an unknown value always counts as a difference.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from .exceptions import ConfigurationError, PreventDestroyError, UnresolvedReferenceError
from .expressions import Reference, lookup_path, resolve
from .graph import ResourceGraph
from .models import (
    UNKNOWN,
    Action,
    Address,
    AttributeChange,
    Change,
    ChangeReason,
    ResourceNode,
    StateDocument,
    StateRecord,
    contains_unknown,
)
from .providers.base import ProviderRegistry
from .retries import call_with_retries
from .settings import RunOptions

logger = logging.getLogger(__name__)


@dataclass
class Plan:
    """
    Result of planning.

    Attributes:
        graph: The graph the plan was computed from
        prior: Refreshed state the plan was computed against
        changes: Ordered ChangeSet (no-ops excluded)
        actions: Planned entry for every node/record in scope, no-ops included
        data_reads: Data source results read during planning, by address
        outputs: Planned root outputs (UNKNOWN where known only after apply)
        drifted: Addresses whose remote objects diverged from state
        destroy: True for destroy plans
    """

    graph: ResourceGraph
    prior: StateDocument
    changes: list[Change] = field(default_factory=list)
    actions: dict[str, Change] = field(default_factory=dict)
    data_reads: dict[str, StateRecord] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    drifted: list[str] = field(default_factory=list)
    destroy: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def change_for(self, address: str | Address) -> Change | None:
        return self.actions.get(str(address))

    def summary(self) -> dict[str, int]:
        """Counts in terraform terms: to add, to change, to destroy."""
        counts = {"add": 0, "change": 0, "destroy": 0, "read": 0}
        for change in self.changes:
            if change.action == Action.CREATE:
                counts["add"] += 1
            elif change.action == Action.UPDATE:
                counts["change"] += 1
            elif change.action == Action.REPLACE:
                counts["add"] += 1
                counts["destroy"] += 1
            elif change.action == Action.DESTROY:
                counts["destroy"] += 1
            elif change.action == Action.READ:
                counts["read"] += 1
        return counts


def destroy_order(records: dict[str, StateRecord], addresses: set[str]) -> list[str]:
    """Order addresses so that dependents come before their dependencies."""
    deps = {a: {d for d in records[a].dependencies if d in addresses} for a in addresses}
    dependents: dict[str, set[str]] = {a: set() for a in addresses}
    for a, ds in deps.items():
        for d in ds:
            dependents[d].add(a)
    remaining = {a: len(dependents[a]) for a in addresses}
    heap = [a for a, n in remaining.items() if n == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        current = heapq.heappop(heap)
        order.append(current)
        for d in deps[current]:
            remaining[d] -= 1
            if remaining[d] == 0:
                heapq.heappush(heap, d)
    # Recorded dependencies can only be cyclic if the state was edited by hand
    order.extend(sorted(set(addresses) - set(order)))
    return order


class Planner:
    """Computes a Plan for a graph against a state document."""

    def __init__(
        self,
        graph: ResourceGraph,
        state: StateDocument,
        providers: ProviderRegistry,
        options: RunOptions | None = None,
    ) -> None:
        self._graph = graph
        self._state = state
        self._providers = providers
        self._options = options or RunOptions()

    async def plan(
        self,
        *,
        destroy: bool = False,
        targets: list[str] | None = None,
    ) -> Plan:
        """
        Compute the ChangeSet.

        Args:
            destroy: Plan destruction of every recorded resource (or the targets)
            targets: Restrict the plan to these addresses (plus their
                dependencies, for non-destroy plans)

        Raises:
            UnresolvedReferenceError: A target names nothing in graph or state
            PreventDestroyError: A protected resource would be destroyed
        """
        prior = self._state.copy()
        target_set = self._validate_targets(targets or [])

        if destroy:
            record_scope = set(target_set) if target_set else set(prior.records)
            node_scope: set[Address] = set()
        else:
            node_scope = self._node_scope(target_set)
            record_scope = {
                a for a in prior.records if not target_set or a in target_set
                or Address.parse(a) in node_scope
            }

        drift: dict[str, set[str]] = {}
        if self._options.refresh:
            await self._refresh(prior, record_scope, drift)

        plan = Plan(graph=self._graph, prior=prior, destroy=destroy)
        plan.drifted = sorted(drift)

        if destroy:
            self._plan_destroy(plan, record_scope & set(prior.records))
        else:
            await self._plan_apply(plan, node_scope, record_scope, drift)
        self._plan_deposed(plan, target_set, node_scope)

        logger.info(
            "Planned %d change(s) (%s)",
            len(plan.changes),
            ", ".join(f"{k}={v}" for k, v in plan.summary().items()),
        )
        return plan

    # -- scope ---------------------------------------------------------------------

    def _validate_targets(self, targets: list[str]) -> set[str]:
        result: set[str] = set()
        for target in targets:
            try:
                address = Address.parse(target)
            except ValueError as e:
                raise UnresolvedReferenceError(target, "target", str(e)) from e
            if address not in self._graph and str(address) not in self._state.records:
                raise UnresolvedReferenceError(target, "target", "not in configuration or state")
            result.add(str(address))
        return result

    def _node_scope(self, targets: set[str]) -> set[Address]:
        if not targets:
            return set(self._graph.nodes)
        selected = {Address.parse(t) for t in targets}
        selected = {a for a in selected if a in self._graph}
        return selected | self._graph.ancestors(selected)

    # -- refresh -----------------------------------------------------------------

    async def _refresh(
        self, prior: StateDocument, scope: set[str], drift: dict[str, set[str]]
    ) -> None:
        semaphore = asyncio.Semaphore(self._options.parallelism)

        async def refresh_one(address: str) -> None:
            record = prior.records[address]
            provider = self._providers.get(record.provider, address)
            schema = provider.schema(record.resource_type)
            async with semaphore:
                current = await call_with_retries(
                    lambda: provider.read(record.resource_type, record.identifier, record.attributes),
                    self._options,
                    f"refresh {address}",
                )
            if current is None:
                logger.warning("%s no longer exists remotely", address)
                del prior.records[address]
                drift[address] = {"*"}
                return
            changed = {
                k
                for k, v in current.items()
                if k in record.attributes
                and record.attributes[k] != v
                and not schema.is_computed(k)
            }
            if changed:
                logger.info("%s drifted: %s", address, ", ".join(sorted(changed)))
                drift[address] = changed
            record.attributes = {**record.attributes, **current}

        addresses = sorted(a for a in scope if a in prior.records and not prior.records[a].is_data)
        await asyncio.gather(*(refresh_one(a) for a in addresses))

    # -- destroy plans -------------------------------------------------------------

    def _plan_destroy(self, plan: Plan, addresses: set[str]) -> None:
        for address in destroy_order(plan.prior.records, addresses):
            record = plan.prior.records[address]
            if record.lifecycle.prevent_destroy:
                raise PreventDestroyError(address, "destroy")
            change = Change(
                address=Address.parse(address),
                action=Action.DESTROY,
                reason=ChangeReason.CONFIG,
                provider=record.provider,
                resource_type=record.resource_type,
            )
            plan.changes.append(change)
            plan.actions[address] = change

    # -- apply plans -----------------------------------------------------------------

    async def _plan_apply(
        self,
        plan: Plan,
        node_scope: set[Address],
        record_scope: set[str],
        drift: dict[str, set[str]],
    ) -> None:
        # Planned values per node: (values, partial). Partial values come from
        # nodes created in this plan; missing attributes there are UNKNOWN.
        planned: dict[Address, tuple[dict[str, Any] | None, bool]] = {}

        def lookup_for(referrer: str):
            def lookup(ref: Reference) -> Any:
                values, partial = planned.get(ref.address, (None, True))
                if values is None:
                    return UNKNOWN
                try:
                    return lookup_path(values, ref.path)
                except KeyError:
                    if partial:
                        return UNKNOWN
                    raise UnresolvedReferenceError(
                        str(ref), referrer, "attribute not found"
                    ) from None

            return lookup

        for address in self._graph.topological_order():
            if address not in node_scope:
                continue
            node = self._graph.nodes[address]
            desired = resolve(node.attributes, lookup_for(str(address)))
            if node.is_data:
                change, values = await self._plan_data(plan, node, desired)
                planned[address] = (values, values is None)
            else:
                record = plan.prior.records.get(str(address))
                change = self._plan_node(node, record, desired, drift.get(str(address), set()))
                planned[address] = self._planned_values(change, record, desired)
            plan.actions[str(address)] = change
            if change.action != Action.NOOP:
                plan.changes.append(change)

        self._force_create_before_destroy(plan)

        orphans = {a for a in record_scope if a in plan.prior.records} - {
            str(a) for a in self._graph.nodes
        }
        for address in destroy_order(plan.prior.records, orphans):
            record = plan.prior.records[address]
            if record.lifecycle.prevent_destroy:
                raise PreventDestroyError(address, "destroy")
            change = Change(
                address=Address.parse(address),
                action=Action.DESTROY,
                reason=ChangeReason.REMOVED,
                provider=record.provider,
                resource_type=record.resource_type,
            )
            plan.changes.append(change)
            plan.actions[address] = change

        plan.outputs = {
            name: resolve(value, lookup_for(f"output.{name}"))
            for name, value in self._graph.outputs.items()
        }

    def _force_create_before_destroy(self, plan: Plan) -> None:
        # A replaced dependency of a create_before_destroy node must be
        # replaced the same way: its old object outlives the dependent's.
        replacing = {c.address: c for c in plan.changes if c.action == Action.REPLACE}
        forced: set[Address] = set()
        for address, change in replacing.items():
            if change.create_before_destroy:
                forced |= {
                    a
                    for a in self._graph.ancestors([address])
                    if a in replacing and not replacing[a].create_before_destroy
                }
        if not forced:
            return
        for i, change in enumerate(plan.changes):
            if change.address in forced:
                logger.info("%s: create_before_destroy required by a dependent", change.address)
                plan.changes[i] = replace(change, create_before_destroy=True)
                plan.actions[str(change.address)] = plan.changes[i]

    def _plan_deposed(self, plan: Plan, targets: set[str], node_scope: set[Address]) -> None:
        for record in sorted(plan.prior.deposed, key=lambda r: (r.address, r.identifier)):
            address = Address.parse(record.address)
            if targets and record.address not in targets and address not in node_scope:
                continue
            plan.changes.append(
                Change(
                    address=address,
                    action=Action.DESTROY,
                    reason=ChangeReason.DEPOSED,
                    provider=record.provider,
                    resource_type=record.resource_type,
                    deposed=record.identifier,
                )
            )

    def _planned_values(
        self, change: Change, record: StateRecord | None, desired: dict[str, Any]
    ) -> tuple[dict[str, Any] | None, bool]:
        if record is None or change.action in (Action.CREATE, Action.REPLACE):
            return dict(desired), True
        return {**record.attributes, **desired}, False

    async def _plan_data(
        self, plan: Plan, node: ResourceNode, desired: dict[str, Any]
    ) -> tuple[Change, dict[str, Any] | None]:
        address = str(node.address)
        if contains_unknown(desired):
            change = Change(
                address=node.address,
                action=Action.READ,
                reason=ChangeReason.CONFIG,
                provider=node.provider,
                resource_type=node.resource_type,
            )
            return change, None

        provider = self._providers.get(node.provider, address)
        schema = provider.schema(node.resource_type)
        identifier = desired.get(schema.identifier)
        if identifier is None:
            raise ConfigurationError(f"{address}: data source requires '{schema.identifier}'")
        result = await call_with_retries(
            lambda: provider.read(node.resource_type, str(identifier), None),
            self._options,
            f"read {address}",
        )
        if result is None:
            raise ConfigurationError(f"{address}: {node.resource_type} '{identifier}' not found")
        values = {**desired, **result}
        plan.data_reads[address] = StateRecord(
            address=address,
            resource_type=node.resource_type,
            provider=node.provider,
            identifier=str(identifier),
            attributes=values,
            dependencies=sorted(str(a) for a in self._graph.dependencies(node.address)),
        )
        change = Change(
            address=node.address,
            action=Action.NOOP,
            provider=node.provider,
            resource_type=node.resource_type,
        )
        return change, values

    def _plan_node(
        self,
        node: ResourceNode,
        record: StateRecord | None,
        desired: dict[str, Any],
        drifted: set[str],
    ) -> Change:
        provider = self._providers.get(node.provider, str(node.address))
        schema = provider.schema(node.resource_type)

        if record is None:
            diff = {
                k: AttributeChange(None, v, schema.forces_replacement(k))
                for k, v in sorted(desired.items())
            }
            return Change(
                address=node.address,
                action=Action.CREATE,
                diff=diff,
                reason=ChangeReason.DRIFT if "*" in drifted else ChangeReason.CONFIG,
                provider=node.provider,
                resource_type=node.resource_type,
            )

        diff: dict[str, AttributeChange] = {}
        keys = set(desired) | {
            k for k in record.attributes if not schema.is_computed(k)
        }
        for key in sorted(keys):
            if schema.is_computed(key) and key not in desired:
                continue
            old = record.attributes.get(key)
            new = desired.get(key)
            if contains_unknown(new) or old != new:
                diff[key] = AttributeChange(old, new, schema.forces_replacement(key))

        if not diff:
            action = Action.NOOP
        elif any(c.forces_replacement for c in diff.values()):
            action = Action.REPLACE
            if node.lifecycle.prevent_destroy:
                raise PreventDestroyError(str(node.address), "replace")
        else:
            action = Action.UPDATE

        reason = ChangeReason.CONFIG
        if diff and set(diff) <= drifted:
            reason = ChangeReason.DRIFT

        return Change(
            address=node.address,
            action=action,
            diff=diff,
            reason=reason,
            create_before_destroy=node.lifecycle.create_before_destroy,
            provider=node.provider,
            resource_type=node.resource_type,
        )
