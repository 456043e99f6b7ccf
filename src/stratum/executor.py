"""Executor: walks a Plan and reconciles remote objects.

The ChangeSet is expanded into an operation graph. A replacement becomes a
destroy operation and a create operation, ordered by create_before_destroy.
Destroys run in reverse dependency order using the dependencies recorded in
state. Ready operations are started in address order, with at most
``parallelism`` of them in flight.

The create half of a create_before_destroy replacement moves the old object
to the deposed list of the state document. It leaves that list only when its
destroy commits, so a failed or cancelled destroy is planned again.

Every successful provider call is committed to the state store before any
dependent operation starts, so deferred references are always resolved from
committed state.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .exceptions import (
    ApplyCancelledError,
    CycleError,
    DependencyExistsError,
    ExecutionError,
    IncompleteReplacementError,
    PermanentProviderError,
    UnresolvedReferenceError,
)
from .expressions import Reference, lookup_path, resolve
from .graph import find_cycle
from .models import (
    Action,
    Address,
    AttributeChange,
    Change,
    NodeStatus,
    ResourceNode,
    StateDocument,
    StateRecord,
)
from .providers.base import ProviderRegistry, ResourceSchema
from .retries import AttemptCounter, call_with_retries
from .settings import RunOptions

if TYPE_CHECKING:
    from .planner import Plan
    from .state.store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class NodeResult:
    """
    Execution outcome of one planned change.

    Attributes:
        address: Node address, or the change key for a deposed object
        action: Planned action
        status: Final (or current) status
        error: Error that failed or skipped the node
        cause: For skipped nodes, the chain of addresses from the failed root
            cause down to the direct blocker
        attempts: Provider calls made, retries included
        started_seq: Run sequence number when the first operation started
        committed_seq: Run sequence number when the last operation committed
    """

    address: str
    action: Action
    status: NodeStatus = NodeStatus.PLANNED
    error: Exception | None = None
    cause: list[str] = field(default_factory=list)
    attempts: int = 0
    started_seq: int | None = None
    committed_seq: int | None = None


@dataclass
class ApplyReport:
    """Result of an apply run. Partial success is a valid end state."""

    results: dict[str, NodeResult] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    def _with_status(self, status: NodeStatus) -> list[NodeResult]:
        return [r for _, r in sorted(self.results.items()) if r.status == status]

    @property
    def applied(self) -> list[NodeResult]:
        return self._with_status(NodeStatus.APPLIED)

    @property
    def failed(self) -> list[NodeResult]:
        return self._with_status(NodeStatus.FAILED)

    @property
    def skipped(self) -> list[NodeResult]:
        return self._with_status(NodeStatus.SKIPPED)

    @property
    def succeeded(self) -> bool:
        """True when every planned change was applied."""
        return all(r.status == NodeStatus.APPLIED for r in self.results.values())


@dataclass
class Operation:
    """One provider-facing step of a change."""

    key: str
    change: Change
    kind: Action
    record: StateRecord | None = None
    depends: set[str] = field(default_factory=set)

    @property
    def address(self) -> str:
        return str(self.change.address)

    @property
    def result_key(self) -> str:
        return self.change.key


def _destroy_key(address: str) -> str:
    return f"{address} (destroy)"


class Executor:
    """
    Applies a Plan.

    Example:
        executor = Executor(plan, store, providers, options)
        report = await executor.apply()
    """

    def __init__(
        self,
        plan: Plan,
        store: StateStore,
        providers: ProviderRegistry,
        options: RunOptions | None = None,
        cancel: asyncio.Event | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._plan = plan
        self._store = store
        self._providers = providers
        self._options = options or RunOptions()
        self._cancel = cancel or asyncio.Event()
        self._sleep = sleep
        self._doc: StateDocument = plan.prior.copy()
        self._commit_lock = asyncio.Lock()
        self._seq = itertools.count(1)
        self._remaining: dict[str, int] = {}
        self._report = ApplyReport()

    @property
    def state(self) -> StateDocument:
        """Working copy of the state document (committed after every operation)."""
        return self._doc

    def cancel(self) -> None:
        """Stop scheduling new operations; in-flight calls finish and commit."""
        self._cancel.set()

    async def apply(self) -> ApplyReport:
        """Execute every operation and return the report."""
        ops = self._build_operations()
        for change in self._plan.changes:
            self._report.results[change.key] = NodeResult(
                address=change.key, action=change.action
            )
        for op in ops.values():
            self._remaining[op.result_key] = self._remaining.get(op.result_key, 0) + 1

        await self._commit_unchanged()

        waiting = dict(ops)
        done: set[str] = set()
        running: dict[asyncio.Task[Exception | None], Operation] = {}

        while True:
            if self._cancel.is_set():
                self._report.cancelled = True
            else:
                ready = sorted(
                    (op for op in waiting.values() if op.depends <= done),
                    key=lambda o: o.key,
                )
                for op in ready[: self._options.parallelism - len(running)]:
                    del waiting[op.key]
                    running[asyncio.create_task(self._run(op))] = op

            if not running:
                break

            finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(finished, key=lambda t: running[t].key):
                op = running.pop(task)
                error = task.result()
                if error is None:
                    done.add(op.key)
                    continue
                self._fail(op, error)
                self._skip_dependents(op, waiting)

        for op in sorted(waiting.values(), key=lambda o: o.key):
            result = self._report.results[op.result_key]
            if result.status not in (NodeStatus.PLANNED, NodeStatus.APPLYING):
                continue
            incomplete = self._incomplete_replacement(op)
            if incomplete is not None:
                result.status = NodeStatus.FAILED
                result.error = incomplete
            elif self._report.cancelled:
                result.status = NodeStatus.SKIPPED
                result.error = ApplyCancelledError()
            else:
                result.status = NodeStatus.FAILED
                result.error = ExecutionError(f"{op.key} never became ready")

        await self._finish()
        logger.info(
            "Apply finished: %d applied, %d failed, %d skipped%s",
            len(self._report.applied),
            len(self._report.failed),
            len(self._report.skipped),
            " (cancelled)" if self._report.cancelled else "",
        )
        return self._report

    # -- operation graph ---------------------------------------------------------------

    def _build_operations(self) -> dict[str, Operation]:
        plan = self._plan
        ops: dict[str, Operation] = {}
        apply_key: dict[str, str] = {}
        destroy_key: dict[str, str] = {}
        deposed: list[Operation] = []

        for change in plan.changes:
            address = str(change.address)
            record = self._doc.records.get(address)
            if change.deposed is not None:
                record = next(
                    (
                        r
                        for r in self._doc.deposed
                        if (r.address, r.identifier) == (address, change.deposed)
                    ),
                    None,
                )
                op = Operation(change.key, change, Action.DESTROY, record)
                ops[op.key] = op
                deposed.append(op)
            elif change.action in (Action.CREATE, Action.UPDATE, Action.READ):
                ops[address] = Operation(address, change, change.action, record)
                apply_key[address] = address
            elif change.action == Action.REPLACE:
                ops[address] = Operation(address, change, Action.CREATE, record)
                ops[_destroy_key(address)] = Operation(
                    _destroy_key(address), change, Action.DESTROY, record
                )
                apply_key[address] = address
                destroy_key[address] = _destroy_key(address)
            elif change.action == Action.DESTROY:
                ops[_destroy_key(address)] = Operation(
                    _destroy_key(address), change, Action.DESTROY, record
                )
                destroy_key[address] = _destroy_key(address)

        # Applies follow the graph edges.
        for address, key in apply_key.items():
            node_address = Address.parse(address)
            for dep in plan.graph.dependencies(node_address):
                if str(dep) in apply_key:
                    ops[key].depends.add(apply_key[str(dep)])

        for address, key in destroy_key.items():
            op = ops[key]
            change = op.change
            if change.action == Action.REPLACE:
                if change.create_before_destroy:
                    # old object goes only after the replacement and everything
                    # now pointing at it is in place
                    op.depends.add(apply_key[address])
                    for dependent in plan.graph.dependents(change.address):
                        if str(dependent) in apply_key:
                            op.depends.add(apply_key[str(dependent)])
                else:
                    ops[apply_key[address]].depends.add(key)
            # Dependents recorded in state go first: their destroy, or their
            # update that drops the reference.
            for dependent in self._doc.dependents_of(address):
                if dependent == address:
                    continue
                if dependent in destroy_key:
                    op.depends.add(destroy_key[dependent])
                elif dependent in apply_key and not (
                    change.action == Action.REPLACE and not change.create_before_destroy
                ):
                    op.depends.add(apply_key[dependent])

        # A deposed object goes before anything it recorded as a dependency.
        for op in deposed:
            if op.record is None:
                continue
            for dep in op.record.dependencies:
                for other in deposed:
                    if other.address == dep:
                        other.depends.add(op.key)
                if dep in destroy_key:
                    ops[destroy_key[dep]].depends.add(op.key)

        for op in ops.values():
            op.depends.discard(op.key)

        cycle = find_cycle(ops, {key: op.depends for key, op in ops.items()})
        if cycle:
            raise CycleError(cycle)
        return ops

    # -- running ---------------------------------------------------------------------

    async def _run(self, op: Operation) -> Exception | None:
        result = self._report.results[op.result_key]
        result.status = NodeStatus.APPLYING
        if result.started_seq is None:
            result.started_seq = next(self._seq)
        counter = AttemptCounter()
        try:
            if op.kind == Action.DESTROY:
                await self._destroy(op, counter)
            elif op.kind == Action.READ:
                await self._read(op, counter)
            else:
                await self._create_or_update(op, counter)
        except Exception as e:
            logger.warning("Failed to %s %s: %s", op.kind.value, op.address, e)
            return e
        finally:
            result.attempts += counter.attempts

        self._remaining[op.result_key] -= 1
        if self._remaining[op.result_key] == 0:
            result.status = NodeStatus.APPLIED
        return None

    def _fail(self, op: Operation, error: Exception) -> None:
        result = self._report.results[op.result_key]
        result.status = NodeStatus.FAILED
        result.error = error

    def _skip_dependents(self, failed: Operation, waiting: dict[str, Operation]) -> None:
        chains: dict[str, list[str]] = {failed.key: [failed.result_key]}
        queue = [failed.key]
        while queue:
            blocker = queue.pop(0)
            for key in sorted(waiting):
                op = waiting[key]
                if blocker not in op.depends or key in chains:
                    continue
                chains[key] = chains[blocker] + [op.result_key]
                queue.append(key)
        root_error = self._report.results[failed.result_key].error
        for key, chain in chains.items():
            if key == failed.key:
                continue
            op = waiting.pop(key)
            result = self._report.results[op.result_key]
            if result.status == NodeStatus.FAILED:
                continue
            # chain without the skipped node itself
            result.cause = [a for a in chain[:-1] if a != op.result_key]
            incomplete = self._incomplete_replacement(op)
            if incomplete is not None:
                result.status = NodeStatus.FAILED
                result.error = incomplete
                logger.warning("%s (blocked by %s)", incomplete, chain[0])
                continue
            result.status = NodeStatus.SKIPPED
            result.error = root_error
            logger.info("Skipping %s: depends on failed %s", op.result_key, chain[0])

    def _incomplete_replacement(self, op: Operation) -> IncompleteReplacementError | None:
        """Error for a replacement whose other half already ran, else None."""
        result = self._report.results[op.result_key]
        if op.change.action != Action.REPLACE or result.status != NodeStatus.APPLYING:
            return None
        completed = "create" if op.kind == Action.DESTROY else "destroy"
        return IncompleteReplacementError(op.address, completed)

    # -- provider calls ------------------------------------------------------------------

    def _lookup(self, referrer: str) -> Callable[[Reference], Any]:
        def lookup(ref: Reference) -> Any:
            record = self._doc.records.get(str(ref.address))
            if record is None:
                raise UnresolvedReferenceError(str(ref), referrer, "no committed state")
            try:
                return lookup_path(record.attributes, ref.path)
            except KeyError:
                raise UnresolvedReferenceError(str(ref), referrer, "attribute not found") from None

        return lookup

    def _node(self, op: Operation) -> ResourceNode:
        return self._plan.graph.nodes[op.change.address]

    def _dependencies(self, node: ResourceNode) -> list[str]:
        return sorted(str(a) for a in self._plan.graph.dependencies(node.address))

    async def _create_or_update(self, op: Operation, counter: AttemptCounter) -> None:
        node = self._node(op)
        provider = self._providers.get(node.provider, op.address)
        schema = provider.schema(node.resource_type)
        desired = resolve(node.attributes, self._lookup(op.address))

        current = self._doc.records.get(op.address)
        if op.kind == Action.UPDATE and current is not None:
            diff = self._diff(schema, current, desired)
            if not diff:
                attrs: dict[str, Any] = {}
            else:
                attrs = await call_with_retries(
                    lambda: provider.update(node.resource_type, current.identifier, diff, desired),
                    self._options,
                    f"update {op.address}",
                    counter,
                    self._sleep,
                )
            kept = {k: v for k, v in current.attributes.items() if schema.is_computed(k)}
            identifier = current.identifier
        else:
            attrs = await call_with_retries(
                lambda: provider.create(node.resource_type, desired),
                self._options,
                f"create {op.address}",
                counter,
                self._sleep,
            )
            if attrs.get(schema.identifier) is None:
                raise PermanentProviderError(
                    f"{op.address}: provider returned no '{schema.identifier}'"
                )
            kept = {}
            identifier = str(attrs[schema.identifier])

        record = StateRecord(
            address=op.address,
            resource_type=node.resource_type,
            provider=node.provider,
            identifier=identifier,
            attributes={**kept, **desired, **attrs},
            dependencies=self._dependencies(node),
            lifecycle=node.lifecycle,
        )

        def store(doc: StateDocument) -> None:
            if op.change.action == Action.REPLACE:
                # the old object stays tracked until its destroy commits
                doc.depose(op.address)
            doc.records[op.address] = record

        await self._commit(op, store)

    def _diff(
        self, schema: ResourceSchema, record: StateRecord, desired: dict[str, Any]
    ) -> dict[str, AttributeChange]:
        diff: dict[str, AttributeChange] = {}
        keys = set(desired) | {k for k in record.attributes if not schema.is_computed(k)}
        for key in sorted(keys):
            if schema.is_computed(key) and key not in desired:
                continue
            old, new = record.attributes.get(key), desired.get(key)
            if old != new:
                diff[key] = AttributeChange(old, new, schema.forces_replacement(key))
        return diff

    async def _read(self, op: Operation, counter: AttemptCounter) -> None:
        node = self._node(op)
        provider = self._providers.get(node.provider, op.address)
        schema = provider.schema(node.resource_type)
        desired = resolve(node.attributes, self._lookup(op.address))
        identifier = desired.get(schema.identifier)
        if identifier is None:
            raise PermanentProviderError(f"{op.address}: data source requires '{schema.identifier}'")
        attrs = await call_with_retries(
            lambda: provider.read(node.resource_type, str(identifier), None),
            self._options,
            f"read {op.address}",
            counter,
            self._sleep,
        )
        if attrs is None:
            raise PermanentProviderError(
                f"{op.address}: {node.resource_type} '{identifier}' not found", "NotFound"
            )
        record = StateRecord(
            address=op.address,
            resource_type=node.resource_type,
            provider=node.provider,
            identifier=str(identifier),
            attributes={**desired, **attrs},
            dependencies=self._dependencies(node),
        )
        await self._commit(op, lambda doc: doc.records.__setitem__(op.address, record))

    async def _destroy(self, op: Operation, counter: AttemptCounter) -> None:
        record = op.record
        if record is None:
            await self._commit(op, lambda doc: None)
            return

        if op.change.action == Action.DESTROY and op.change.deposed is None:
            blockers = [
                a
                for a in self._doc.dependents_of(op.address)
                if a != op.address and self._in_check_scope(a)
            ]
            if blockers:
                raise DependencyExistsError(op.address, blockers)

        if not record.is_data:
            provider = self._providers.get(record.provider, op.address)
            await call_with_retries(
                lambda: provider.destroy(record.resource_type, record.identifier),
                self._options,
                f"destroy {op.address}",
                counter,
                self._sleep,
            )

        await self._commit(op, lambda doc: doc.forget(op.address, record.identifier))

    def _in_check_scope(self, address: str) -> bool:
        if self._options.destroy_check_scope == "state":
            return True
        try:
            return Address.parse(address) in self._plan.graph
        except ValueError:
            return False

    # -- state commits -------------------------------------------------------------

    async def _save(self) -> None:
        self._doc.serial += 1
        snapshot = self._doc.copy()
        try:
            await asyncio.to_thread(self._store.save, snapshot)
        except Exception:
            self._doc.serial -= 1
            raise

    async def _commit(self, op: Operation, mutate: Callable[[StateDocument], None]) -> None:
        async with self._commit_lock:
            mutate(self._doc)
            await self._save()
            self._report.results[op.result_key].committed_seq = next(self._seq)
        logger.info("%s: %s complete", op.address, op.kind.value)

    async def _commit_unchanged(self) -> None:
        """Record data reads and refreshed metadata of nodes with no change."""
        touched = False
        for address, record in self._plan.data_reads.items():
            self._doc.records[address] = record
            touched = True
        for address, change in self._plan.actions.items():
            if change.action != Action.NOOP or change.address.mode == "data":
                continue
            current = self._doc.records.get(address)
            if current is None:
                continue
            node = self._plan.graph.nodes[change.address]
            deps = self._dependencies(node)
            if current.dependencies != deps or current.lifecycle != node.lifecycle:
                current.dependencies = deps
                current.lifecycle = node.lifecycle
                touched = True
        if touched:
            async with self._commit_lock:
                await self._save()

    async def _finish(self) -> None:
        outputs: dict[str, Any] = {}
        for name, value in self._plan.graph.outputs.items():
            try:
                outputs[name] = resolve(value, self._lookup(f"output.{name}"))
            except UnresolvedReferenceError as e:
                logger.debug("Output %s not available: %s", name, e)
        self._report.outputs = outputs
        async with self._commit_lock:
            self._doc.outputs = outputs
            await self._save()
