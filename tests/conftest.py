"""Pytest fixtures for stratum tests."""

import asyncio
import textwrap
from pathlib import Path

import pytest
from moto import mock_aws

from stratum import Engine, LocalStateStore, RunOptions, load_configuration
from stratum.providers import LocalProvider, ProviderRegistry

RESOURCE_TYPES = {
    "local_network": {"force_new": ["cidr"], "computed": ["subnet_id"]},
    "local_cluster": {"force_new": ["network_id", "name"]},
    "local_queue": {},
}


class ScriptedProvider(LocalProvider):
    """
    LocalProvider that records calls and can fail or block on demand.

    Calls are labelled by the object's ``name`` attribute, so tests can
    script behaviour without knowing provider-assigned identifiers.
    """

    def __init__(self, name="local", options=None):
        super().__init__(name, options)
        self.calls: list[tuple[str, str]] = []
        self.gates: dict[tuple[str, str], asyncio.Event] = {}
        self._failures: dict[tuple[str, str], list[Exception]] = {}

    def fail(self, method: str, label: str, *errors: Exception) -> None:
        """Raise errors, in order, on the next calls of method for label."""
        self._failures.setdefault((method, label), []).extend(errors)

    def calls_to(self, method: str) -> list[str]:
        return [label for m, label in self.calls if m == method]

    def _label(self, resource_type, identifier):
        obj = self.objects(resource_type).get(identifier, {})
        return str(obj.get("name", identifier))

    async def _step(self, method, label):
        self.calls.append((method, label))
        gate = self.gates.get((method, label))
        if gate is not None:
            await gate.wait()
        pending = self._failures.get((method, label))
        if pending:
            raise pending.pop(0)

    async def read(self, resource_type, identifier, prior=None):
        await self._step("read", self._label(resource_type, identifier))
        return await super().read(resource_type, identifier, prior)

    async def create(self, resource_type, desired):
        await self._step("create", str(desired.get("name", resource_type)))
        return await super().create(resource_type, desired)

    async def update(self, resource_type, identifier, diff, desired):
        await self._step("update", self._label(resource_type, identifier))
        return await super().update(resource_type, identifier, diff, desired)

    async def destroy(self, resource_type, identifier):
        await self._step("destroy", self._label(resource_type, identifier))
        await super().destroy(resource_type, identifier)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    # Unset AWS_ENDPOINT_URL to ensure moto intercepts requests
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)


@pytest.fixture
def mock_dynamodb(aws_credentials):
    """Mock DynamoDB for tests."""
    with mock_aws():
        yield


@pytest.fixture
def infra_dir(tmp_path: Path) -> Path:
    """Root configuration directory."""
    path = tmp_path / "infra"
    path.mkdir()
    return path


@pytest.fixture
def write_config(infra_dir: Path):
    """Write a YAML configuration file (dedented) into a module directory."""

    def write(text: str, name: str = "main.yaml", directory: Path | None = None) -> Path:
        target = directory or infra_dir
        target.mkdir(parents=True, exist_ok=True)
        (target / name).write_text(textwrap.dedent(text))
        return target

    return write


@pytest.fixture
def provider() -> ScriptedProvider:
    """Scripted local provider shared by every engine a test creates."""
    return ScriptedProvider("local", {"resource_types": RESOURCE_TYPES})


@pytest.fixture
def state_store(tmp_path: Path) -> LocalStateStore:
    return LocalStateStore(tmp_path / "state" / "stratum.state.json")


@pytest.fixture
def make_engine(infra_dir: Path, provider: ScriptedProvider, state_store: LocalStateStore):
    """
    Build an Engine over the current configuration files.

    Every engine shares the provider and the state store, so consecutive
    engines behave like consecutive CLI runs against the same remote API.
    """

    def make(variables: dict[str, str] | None = None, **options) -> Engine:
        options.setdefault("backoff_base", 0.0)
        options.setdefault("backoff_max", 0.0)
        configuration = load_configuration(infra_dir, variables, environ={})
        return Engine(
            configuration,
            store=state_store,
            providers=ProviderRegistry({"local": provider}),
            options=RunOptions(**options),
        )

    return make
