"""Tests for the apply executor."""

import asyncio
from dataclasses import replace

import pytest

from stratum.exceptions import (
    ApplyCancelledError,
    CycleError,
    DependencyExistsError,
    IncompleteReplacementError,
    PermanentProviderError,
    StateConflictError,
    TransientProviderError,
)
from stratum.executor import ApplyReport, Executor, NodeResult
from stratum.models import Action, NodeStatus
from stratum.planner import Planner
from stratum.providers import ProviderRegistry
from stratum.settings import RunOptions

CONFIG = """
variables:
  cidr: {type: string, default: 10.0.0.0/16}
  cluster_name: {type: string, default: cluster}
  instance_type: {type: string, default: m5.large}
resources:
  local_network:
    main:
      name: main
      cidr: ${var.cidr}
  local_cluster:
    main:
      name: ${var.cluster_name}
      network_id: ${local_network.main.id}
      subnet: ${local_network.main.subnet_id}
      instance_type: ${var.instance_type}
  local_queue:
    jobs:
      name: jobs
outputs:
  cluster_id: ${local_cluster.main.id}
"""

MIXED_LIFECYCLE = """
variables:
  cidr: {type: string, default: 10.0.0.0/16}
resources:
  local_network:
    main: {name: main, cidr: "${var.cidr}"}
  local_cluster:
    main:
      name: cluster
      network_id: ${local_network.main.id}
      lifecycle: {create_before_destroy: true}
"""

LONE_NETWORK = """
variables:
  cidr: {type: string, default: 10.0.0.0/16}
resources:
  local_network:
    main:
      name: main
      cidr: ${var.cidr}
      lifecycle: {create_before_destroy: CBD}
"""


@pytest.fixture
def network_config(write_config):
    return write_config(CONFIG)


def _status(report: ApplyReport) -> dict[str, NodeStatus]:
    return {address: r.status for address, r in report.results.items()}


class TestApply:
    """Tests for a successful apply."""

    async def test_creates_and_commits(self, network_config, make_engine, provider, state_store):
        plan, report = await make_engine().apply()

        assert report.succeeded
        assert _status(report) == {
            "local_network.main": NodeStatus.APPLIED,
            "local_cluster.main": NodeStatus.APPLIED,
            "local_queue.jobs": NodeStatus.APPLIED,
        }
        state = state_store.load()
        network = state.records["local_network.main"]
        cluster = state.records["local_cluster.main"]
        assert cluster.attributes["network_id"] == network.identifier
        assert cluster.attributes["subnet"] == network.attributes["subnet_id"]
        assert cluster.dependencies == ["local_network.main"]
        assert state.outputs == {"cluster_id": cluster.identifier}
        assert report.outputs == state.outputs

    async def test_every_commit_is_saved(self, network_config, make_engine, state_store):
        await make_engine().apply()
        # three resource commits plus the final outputs commit
        assert state_store.load().serial == 4
        assert state_store.backup_path.exists()

    async def test_dependencies_commit_before_dependents_start(self, network_config, make_engine):
        plan, report = await make_engine(parallelism=2).apply()

        for edge in plan.graph.edges:
            source = report.results[str(edge.source)]
            target = report.results[str(edge.target)]
            assert source.committed_seq < target.started_seq

    async def test_update_keeps_identifier(self, network_config, make_engine, provider):
        await make_engine().apply()
        before = make_engine().load_state().records["local_cluster.main"]
        provider.calls.clear()

        plan, report = await make_engine({"instance_type": "m5.xlarge"}).apply()

        assert [(c.action, str(c.address)) for c in plan.changes] == [
            (Action.UPDATE, "local_cluster.main")
        ]
        assert report.succeeded
        after = make_engine().load_state().records["local_cluster.main"]
        assert after.identifier == before.identifier
        assert after.attributes["instance_type"] == "m5.xlarge"
        assert provider.calls_to("update") == ["cluster"]
        assert provider.calls_to("create") == []

    async def test_second_apply_is_noop(self, network_config, make_engine, provider):
        await make_engine().apply()
        provider.calls.clear()

        plan, report = await make_engine().apply()

        assert not plan.has_changes
        assert report.results == {}
        assert provider.calls_to("create") == provider.calls_to("update") == []

    async def test_declined(self, network_config, make_engine, state_store):
        plan, report = await make_engine().apply(confirm=lambda p: False)

        assert plan.has_changes
        assert report is None
        assert not state_store.path.exists()


class TestReplace:
    """Tests for replacement ordering."""

    async def test_destroy_before_create(self, network_config, make_engine, provider):
        await make_engine().apply()
        provider.calls.clear()

        plan, report = await make_engine({"cidr": "10.1.0.0/16"}).apply()

        assert report.succeeded
        mutations = [c for c in provider.calls if c[0] != "read"]
        assert mutations == [
            ("destroy", "cluster"),
            ("destroy", "main"),
            ("create", "main"),
            ("create", "cluster"),
        ]
        state = make_engine().load_state()
        assert state.records["local_network.main"].attributes["cidr"] == "10.1.0.0/16"
        assert (
            state.records["local_cluster.main"].attributes["network_id"]
            == state.records["local_network.main"].identifier
        )

    async def test_create_before_destroy(self, write_config, make_engine, provider):
        write_config(
            """
            variables:
              cluster_name: {default: blue}
            resources:
              local_cluster:
                main:
                  name: ${var.cluster_name}
                  lifecycle: {create_before_destroy: true}
            """
        )
        await make_engine().apply()
        old = make_engine().load_state().records["local_cluster.main"]
        provider.calls.clear()

        plan, report = await make_engine({"cluster_name": "green"}).apply()

        assert plan.changes[0].action == Action.REPLACE
        assert plan.changes[0].create_before_destroy
        assert report.succeeded
        mutations = [c for c in provider.calls if c[0] != "read"]
        assert mutations == [("create", "green"), ("destroy", "blue")]
        new = make_engine().load_state().records["local_cluster.main"]
        assert new.identifier != old.identifier
        assert list(provider.objects("local_cluster")) == [new.identifier]

    async def test_replaced_dependency_of_create_before_destroy_node(
        self, write_config, make_engine, provider
    ):
        write_config(MIXED_LIFECYCLE)
        await make_engine().apply()
        provider.calls.clear()

        plan, report = await make_engine({"cidr": "10.1.0.0/16"}).apply()

        assert {str(c.address): (c.action, c.create_before_destroy) for c in plan.changes} == {
            "local_network.main": (Action.REPLACE, True),
            "local_cluster.main": (Action.REPLACE, True),
        }
        assert report.succeeded
        assert not report.cancelled
        mutations = [c for c in provider.calls if c[0] != "read"]
        assert mutations == [
            ("create", "main"),
            ("create", "cluster"),
            ("destroy", "cluster"),
            ("destroy", "main"),
        ]
        state = make_engine().load_state()
        assert state.deposed == []
        assert list(provider.objects("local_network")) == [
            state.records["local_network.main"].identifier
        ]

    async def test_cyclic_operations_are_rejected(
        self, write_config, make_engine, provider, state_store
    ):
        write_config(MIXED_LIFECYCLE)
        await make_engine().apply()
        engine = make_engine({"cidr": "10.1.0.0/16"})
        registry = ProviderRegistry({"local": provider})
        plan = await Planner(engine.graph, state_store.load(), registry, RunOptions()).plan()
        # undo the lifecycle the planner forced onto the network
        plan.changes = [
            replace(c, create_before_destroy=False) if str(c.address) == "local_network.main" else c
            for c in plan.changes
        ]
        provider.calls.clear()

        with pytest.raises(CycleError) as exc_info:
            await Executor(plan, state_store, registry, RunOptions()).apply()

        assert "local_network.main (destroy)" in exc_info.value.cycle
        assert provider.calls == []

    async def test_failed_destroy_keeps_old_object_deposed(
        self, write_config, make_engine, provider, state_store
    ):
        write_config(LONE_NETWORK.replace("CBD", "true"))
        await make_engine().apply()
        old = state_store.load().records["local_network.main"]
        provider.fail("destroy", "main", PermanentProviderError("network in use"))

        _, report = await make_engine({"cidr": "10.1.0.0/16"}).apply()

        network = report.results["local_network.main"]
        assert network.status == NodeStatus.FAILED
        assert isinstance(network.error, PermanentProviderError)
        state = state_store.load()
        new_id = state.records["local_network.main"].identifier
        assert new_id != old.identifier
        assert [(r.address, r.identifier) for r in state.deposed] == [
            ("local_network.main", old.identifier)
        ]

        plan, report = await make_engine({"cidr": "10.1.0.0/16"}).apply()

        assert [(c.action, c.deposed) for c in plan.changes] == [
            (Action.DESTROY, old.identifier)
        ]
        assert report.succeeded
        assert state_store.load().deposed == []
        assert list(provider.objects("local_network")) == [new_id]


class TestRetries:
    """Tests for transient error handling."""

    async def test_transient_errors_are_retried(self, network_config, make_engine, provider):
        provider.fail(
            "create",
            "main",
            TransientProviderError("throttled", "Throttling"),
            TransientProviderError("throttled", "Throttling"),
        )

        _, report = await make_engine(max_attempts=3).apply()

        assert report.succeeded
        assert report.results["local_network.main"].attempts == 3
        assert report.results["local_queue.jobs"].attempts == 1

    async def test_retries_exhausted(self, network_config, make_engine, provider):
        provider.fail("create", "main", *(TransientProviderError("busy") for _ in range(3)))

        _, report = await make_engine(max_attempts=3).apply()

        network = report.results["local_network.main"]
        assert network.status == NodeStatus.FAILED
        assert isinstance(network.error, TransientProviderError)
        assert network.attempts == 3

    async def test_permanent_errors_are_not_retried(self, network_config, make_engine, provider):
        provider.fail("create", "jobs", PermanentProviderError("denied", "AccessDenied"))

        _, report = await make_engine().apply()

        assert report.results["local_queue.jobs"].attempts == 1
        assert report.results["local_queue.jobs"].status == NodeStatus.FAILED


class TestFailureIsolation:
    """Tests for partial failure."""

    async def test_dependents_skipped_independent_branches_continue(
        self, network_config, make_engine, provider, state_store
    ):
        provider.fail("create", "main", PermanentProviderError("invalid cidr"))

        _, report = await make_engine().apply()

        assert _status(report) == {
            "local_network.main": NodeStatus.FAILED,
            "local_cluster.main": NodeStatus.SKIPPED,
            "local_queue.jobs": NodeStatus.APPLIED,
        }
        cluster = report.results["local_cluster.main"]
        assert cluster.cause == ["local_network.main"]
        assert cluster.error is report.results["local_network.main"].error
        assert not report.succeeded
        assert sorted(state_store.load().records) == ["local_queue.jobs"]
        assert "cluster" not in provider.calls_to("create")

    async def test_rerun_converges(self, network_config, make_engine, provider):
        provider.fail("create", "main", PermanentProviderError("invalid cidr"))
        await make_engine().apply()

        plan, report = await make_engine().apply()

        assert sorted(str(c.address) for c in plan.changes) == [
            "local_cluster.main",
            "local_network.main",
        ]
        assert report.succeeded
        assert not (await make_engine().plan()).has_changes

    async def test_skip_chain(self, write_config, make_engine, provider):
        write_config(
            """
            resources:
              local_network:
                a: {name: a}
              local_queue:
                b: {name: b, upstream: "${local_network.a.id}"}
                c: {name: c, upstream: "${local_queue.b.id}"}
            """
        )
        provider.fail("create", "a", PermanentProviderError("boom"))

        _, report = await make_engine().apply()

        assert report.results["local_queue.b"].cause == ["local_network.a"]
        assert report.results["local_queue.c"].cause == ["local_network.a", "local_queue.b"]


class TestDestroy:
    """Tests for destroy runs."""

    async def test_reverse_order(self, network_config, make_engine, provider, state_store):
        await make_engine().apply()
        provider.calls.clear()

        _, report = await make_engine().apply(destroy=True)

        assert report.succeeded
        destroyed = provider.calls_to("destroy")
        assert destroyed.index("cluster") < destroyed.index("main")
        state = state_store.load()
        assert state.records == {}
        assert state.outputs == {}

    async def test_live_dependents_block_targeted_destroy(
        self, network_config, make_engine, provider, state_store
    ):
        await make_engine().apply()
        provider.calls.clear()

        _, report = await make_engine().apply(destroy=True, targets=["local_network.main"])

        network = report.results["local_network.main"]
        assert network.status == NodeStatus.FAILED
        assert isinstance(network.error, DependencyExistsError)
        assert network.error.dependents == ["local_cluster.main"]
        assert provider.calls_to("destroy") == []
        assert "local_network.main" in state_store.load().records

    async def test_check_scope_graph_ignores_unmanaged_records(
        self, network_config, write_config, make_engine, provider, state_store
    ):
        await make_engine().apply()
        write_config(
            """
            resources:
              local_network:
                main: {name: main, cidr: 10.0.0.0/16}
            """
        )

        _, report = await make_engine(destroy_check_scope="graph").apply(
            destroy=True, targets=["local_network.main"]
        )

        assert report.succeeded
        assert "local_network.main" not in state_store.load().records

    async def test_removed_dependent_destroyed_first(
        self, network_config, write_config, make_engine, provider
    ):
        await make_engine().apply()
        write_config("resources: {local_queue: {jobs: {name: jobs}}}")
        provider.calls.clear()

        _, report = await make_engine().apply()

        assert report.succeeded
        assert provider.calls_to("destroy") == ["cluster", "main"]


class TestCancellation:
    """Tests for cooperative cancellation."""

    async def test_in_flight_operations_finish(self, write_config, make_engine, provider, state_store):
        write_config(
            """
            resources:
              local_network:
                main: {name: main}
              local_cluster:
                main: {name: cluster, network_id: "${local_network.main.id}"}
            """
        )
        gate = asyncio.Event()
        provider.gates[("create", "main")] = gate
        cancel = asyncio.Event()

        task = asyncio.create_task(make_engine().apply(cancel=cancel))
        while ("create", "main") not in provider.calls:
            await asyncio.sleep(0.01)
        cancel.set()
        gate.set()
        _, report = await task

        assert report.cancelled
        assert report.results["local_network.main"].status == NodeStatus.APPLIED
        cluster = report.results["local_cluster.main"]
        assert cluster.status == NodeStatus.SKIPPED
        assert isinstance(cluster.error, ApplyCancelledError)
        assert sorted(state_store.load().records) == ["local_network.main"]

    @pytest.mark.parametrize(
        "create_before_destroy,first_half",
        [("true", "create"), ("false", "destroy")],
    )
    async def test_cancel_between_replacement_halves(
        self, write_config, make_engine, provider, state_store, create_before_destroy, first_half
    ):
        write_config(LONE_NETWORK.replace("CBD", create_before_destroy))
        await make_engine().apply()
        old = state_store.load().records["local_network.main"]
        provider.calls.clear()
        gate = asyncio.Event()
        provider.gates[(first_half, "main")] = gate
        cancel = asyncio.Event()

        task = asyncio.create_task(make_engine({"cidr": "10.1.0.0/16"}).apply(cancel=cancel))
        while (first_half, "main") not in provider.calls:
            await asyncio.sleep(0.01)
        cancel.set()
        gate.set()
        _, report = await task

        assert report.cancelled
        network = report.results["local_network.main"]
        assert network.status == NodeStatus.FAILED
        assert isinstance(network.error, IncompleteReplacementError)
        assert network.error.completed == first_half
        assert f"stopped after {first_half}" in str(network.error)
        assert len([c for c in provider.calls if c[0] != "read"]) == 1

        state = state_store.load()
        if first_half == "create":
            assert [r.identifier for r in state.deposed] == [old.identifier]
        else:
            assert state.records == {}
            assert state.deposed == []

    async def test_cancel_before_start(self, network_config, make_engine, provider):
        cancel = asyncio.Event()
        cancel.set()

        _, report = await make_engine().apply(cancel=cancel)

        assert report.cancelled
        assert {r.status for r in report.results.values()} == {NodeStatus.SKIPPED}
        assert provider.calls_to("create") == []


class TestStateCommits:
    """Tests for commit failures."""

    async def test_failed_save_fails_the_node(self, network_config, make_engine, provider):
        engine = make_engine()
        async with engine.session("apply") as session:
            plan = await session.plan()

            class RejectingStore:
                def save(self, document):
                    raise StateConflictError(document.serial - 1)

            executor = Executor(plan, RejectingStore(), engine.providers, engine.options)
            with pytest.raises(StateConflictError):
                await executor.apply()

        assert executor.state.serial == plan.prior.serial
        assert provider.calls_to("create") == ["main", "jobs"]


class TestExecutorDirect:
    """Tests driving Planner and Executor without the engine."""

    async def test_report_lists(self, network_config, make_engine, provider, state_store):
        engine = make_engine()
        state = state_store.load()
        registry = ProviderRegistry({"local": provider})
        plan = await Planner(engine.graph, state, registry, RunOptions()).plan()
        provider.fail("create", "jobs", PermanentProviderError("nope"))

        report = await Executor(plan, state_store, registry, RunOptions(), sleep=_no_sleep).apply()

        assert [r.address for r in report.applied] == ["local_cluster.main", "local_network.main"]
        assert [r.address for r in report.failed] == ["local_queue.jobs"]
        assert report.skipped == []
        assert isinstance(report.results["local_queue.jobs"], NodeResult)


async def _no_sleep(delay: float) -> None:
    return None
