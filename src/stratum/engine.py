"""Run orchestration: configuration, state lock, plan and apply.

Example:
    engine = Engine.from_directory("infra/", options=RunOptions(parallelism=4))
    async with engine.session("apply") as session:
        plan = await session.plan()
        report = await session.apply(plan)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from .config import Configuration, load_configuration, load_module
from .exceptions import StateError
from .executor import ApplyReport, Executor
from .graph import ResourceGraph, build_graph
from .models import StateDocument, StateRecord
from .planner import Plan, Planner
from .providers.base import ProviderRegistry
from .providers.local import LocalProvider
from .settings import RunOptions
from .state import LockInfo, StateStore, acquire_lock, open_store

logger = logging.getLogger(__name__)


class Session:
    """A locked run: state is loaded once and the lock is held throughout."""

    def __init__(self, engine: Engine, lock: LockInfo, state: StateDocument) -> None:
        self.engine = engine
        self.lock = lock
        self.state = state

    async def plan(self, *, destroy: bool = False, targets: list[str] | None = None) -> Plan:
        planner = Planner(self.engine.graph, self.state, self.engine.providers, self.engine.options)
        return await planner.plan(destroy=destroy, targets=targets)

    async def apply(self, plan: Plan, cancel: asyncio.Event | None = None) -> ApplyReport:
        executor = Executor(
            plan, self.engine.store, self.engine.providers, self.engine.options, cancel
        )
        try:
            return await executor.apply()
        finally:
            self.state = executor.state


class Engine:
    """
    Entry point for running a configuration.

    Args:
        configuration: Loaded configuration
        store: State store (default: from the configuration's backend block)
        providers: Provider registry (default: from the provider declarations)
        options: Run settings
    """

    def __init__(
        self,
        configuration: Configuration,
        store: StateStore | None = None,
        providers: ProviderRegistry | None = None,
        options: RunOptions | None = None,
    ) -> None:
        self.configuration = configuration
        self.options = options or RunOptions()
        self.store = store or open_store(configuration.backend, self.options, configuration.root.path)
        self._providers = providers
        self._graph: ResourceGraph | None = None

    @classmethod
    def from_directory(
        cls,
        path: str | Path,
        cli_vars: dict[str, str] | None = None,
        var_files: list[str | Path] | None = None,
        options: RunOptions | None = None,
        environ: dict[str, str] | None = None,
    ) -> Engine:
        configuration = load_configuration(path, cli_vars, var_files, environ)
        return cls(configuration, options=options)

    @classmethod
    def for_state(cls, path: str | Path, options: RunOptions | None = None) -> Engine:
        """Engine for state-only commands: variables are not resolved, no graph is built."""
        return cls(Configuration(root=load_module(Path(path))), options=options)

    @property
    def graph(self) -> ResourceGraph:
        """The resource graph (built on first use)."""
        if self._graph is None:
            self._graph = build_graph(self.configuration)
            logger.info("Built graph with %d node(s)", len(self._graph))
        return self._graph

    @property
    def providers(self) -> ProviderRegistry:
        if self._providers is None:
            registry = ProviderRegistry.from_declarations(self.configuration.providers)
            # the local provider needs no declaration
            if "local" not in registry:
                registry.register(LocalProvider("local"))
            self._providers = registry
        return self._providers

    @asynccontextmanager
    async def session(self, operation: str) -> AsyncIterator[Session]:
        """Hold the state lock for the duration of a run."""
        lock = await asyncio.to_thread(
            acquire_lock, self.store, operation, self.options.lock_timeout
        )
        try:
            state = await asyncio.to_thread(self.store.load)
            yield Session(self, lock, state)
        finally:
            try:
                await asyncio.to_thread(self.store.unlock, lock.id)
            finally:
                if self._providers is not None:
                    await self._providers.close()

    async def plan(self, *, destroy: bool = False, targets: list[str] | None = None) -> Plan:
        async with self.session("plan") as session:
            return await session.plan(destroy=destroy, targets=targets)

    async def apply(
        self,
        *,
        destroy: bool = False,
        targets: list[str] | None = None,
        cancel: asyncio.Event | None = None,
        confirm: Callable[[Plan], bool] | None = None,
    ) -> tuple[Plan, ApplyReport | None]:
        """
        Plan and apply in one locked session.

        ``confirm`` is called with the plan when it has changes; returning
        False ends the run without applying (the report is then None).
        """
        async with self.session("destroy" if destroy else "apply") as session:
            plan = await session.plan(destroy=destroy, targets=targets)
            if plan.has_changes and confirm is not None and not confirm(plan):
                logger.info("Apply declined")
                return plan, None
            return plan, await session.apply(plan, cancel)

    # -- state inspection ----------------------------------------------------------

    def load_state(self) -> StateDocument:
        return self.store.load()

    def outputs(self) -> dict[str, Any]:
        return self.load_state().outputs

    def show(self, address: str) -> StateRecord:
        state = self.load_state()
        try:
            return state.records[address]
        except KeyError:
            raise StateError(f"No state record for {address}") from None

    async def remove(self, addresses: list[str]) -> list[str]:
        """Forget records without destroying the remote objects."""
        async with self.session("state rm") as session:
            state = session.state
            missing = [a for a in addresses if a not in state.records]
            if missing:
                raise StateError(f"No state record for {', '.join(missing)}")
            for address in addresses:
                del state.records[address]
            state.serial += 1
            await asyncio.to_thread(self.store.save, state)
            return sorted(addresses)

    def force_unlock(self, lock_id: str) -> None:
        self.store.force_unlock(lock_id)
