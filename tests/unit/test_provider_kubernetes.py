"""Tests for the Kubernetes provider."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kubernetes_asyncio.client.rest import ApiException

from stratum.exceptions import (
    PermanentProviderError,
    TransientProviderError,
    UnsupportedResourceTypeError,
)
from stratum.providers.kubernetes import (
    MANIFEST_TYPE,
    KubernetesProvider,
    object_id,
    parse_object_id,
    project,
)

MANIFEST = {
    "apiVersion": "v1",
    "kind": "ConfigMap",
    "metadata": {"name": "settings", "namespace": "apps"},
    "data": {"mode": "fast"},
}


class _LiveObject:
    def __init__(self, data):
        self._data = data

    def to_dict(self):
        return self._data


def _live(resource_version="7", **data):
    return _LiveObject(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": "settings",
                "namespace": "apps",
                "uid": "uid-1",
                "resourceVersion": resource_version,
                "managedFields": [{"manager": "stratum"}],
            },
            "data": data or {"mode": "fast"},
        }
    )


@pytest.fixture
def provider():
    return KubernetesProvider("kubernetes", {"default_namespace": "default"})


@pytest.fixture
def client(provider):
    client = MagicMock()
    client.resources.get = AsyncMock(return_value=SimpleNamespace(namespaced=True))
    client.get = AsyncMock()
    client.create = AsyncMock()
    client.replace = AsyncMock()
    client.delete = AsyncMock()
    with patch.object(provider, "_get_client", AsyncMock(return_value=client)):
        yield client


class TestObjectIds:
    """Tests for identifiers and projection."""

    def test_round_trip(self):
        identifier = object_id("apps/v1", "Deployment", "web", "api")
        assert identifier == "apps/v1|Deployment|web|api"
        assert parse_object_id(identifier) == ("apps/v1", "Deployment", "web", "api")

    def test_cluster_scoped(self):
        identifier = object_id("v1", "Namespace", None, "apps")
        assert parse_object_id(identifier) == ("v1", "Namespace", None, "apps")

    def test_invalid_id(self):
        with pytest.raises(PermanentProviderError):
            parse_object_id("v1|ConfigMap")

    def test_project_keeps_declared_keys(self):
        live = {"metadata": {"name": "a", "uid": "x"}, "spec": {"replicas": 2, "paused": False}}
        shape = {"metadata": {"name": "a"}, "spec": {"replicas": 3}}
        assert project(live, shape) == {"metadata": {"name": "a"}, "spec": {"replicas": 2}}

    def test_project_lists(self):
        live = {"ports": [{"port": 80, "protocol": "TCP"}]}
        shape = {"ports": [{"port": 80}]}
        assert project(live, shape) == {"ports": [{"port": 80}]}


class TestKubernetesProvider:
    """Tests for provider calls against a mocked dynamic client."""

    def test_schema(self, provider):
        assert provider.schema(MANIFEST_TYPE).is_computed("object")
        with pytest.raises(UnsupportedResourceTypeError):
            provider.schema("kubernetes_deployment")

    async def test_create(self, provider, client):
        client.create.return_value = _live()

        attrs = await provider.create(MANIFEST_TYPE, {"manifest": MANIFEST})

        client.create.assert_awaited_once()
        assert client.create.call_args.kwargs["namespace"] == "apps"
        assert attrs["id"] == "v1|ConfigMap|apps|settings"
        assert attrs["uid"] == "uid-1"
        # server-managed fields stay out of the projected manifest
        assert attrs["manifest"] == MANIFEST
        assert "managedFields" in attrs["object"]["metadata"]

    async def test_create_uses_default_namespace(self, provider, client):
        manifest = {**MANIFEST, "metadata": {"name": "settings"}}
        client.create.return_value = _live()
        await provider.create(MANIFEST_TYPE, {"manifest": manifest})
        assert client.create.call_args.kwargs["namespace"] == "default"

    async def test_create_requires_manifest(self, provider, client):
        with pytest.raises(PermanentProviderError, match="requires a 'manifest'"):
            await provider.create(MANIFEST_TYPE, {})
        with pytest.raises(PermanentProviderError, match="metadata.name"):
            await provider.create(MANIFEST_TYPE, {"manifest": {"apiVersion": "v1", "kind": "Pod"}})

    async def test_read_projects_onto_prior(self, provider, client):
        client.get.return_value = _live(mode="slow")
        attrs = await provider.read(
            MANIFEST_TYPE, "v1|ConfigMap|apps|settings", {"manifest": MANIFEST}
        )
        assert attrs["manifest"]["data"] == {"mode": "slow"}
        assert "uid" not in attrs["manifest"]["metadata"]

    async def test_read_missing(self, provider, client):
        client.get.side_effect = ApiException(status=404, reason="Not Found")
        assert await provider.read(MANIFEST_TYPE, "v1|ConfigMap|apps|settings") is None

    async def test_conflict_is_transient(self, provider, client):
        client.create.side_effect = ApiException(status=409, reason="Conflict")
        with pytest.raises(TransientProviderError) as exc_info:
            await provider.create(MANIFEST_TYPE, {"manifest": MANIFEST})
        assert exc_info.value.code == "409"

    async def test_forbidden_is_permanent(self, provider, client):
        client.create.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(PermanentProviderError):
            await provider.create(MANIFEST_TYPE, {"manifest": MANIFEST})

    async def test_update_replaces_with_resource_version(self, provider, client):
        client.get.return_value = _live(resource_version="12")
        client.replace.return_value = _live(resource_version="13", mode="slow")
        manifest = {**MANIFEST, "data": {"mode": "slow"}}

        attrs = await provider.update(
            MANIFEST_TYPE, "v1|ConfigMap|apps|settings", {}, {"manifest": manifest}
        )

        body = client.replace.call_args.kwargs["body"]
        assert body["metadata"]["resourceVersion"] == "12"
        assert attrs["resource_version"] == "13"
        assert attrs["manifest"]["data"] == {"mode": "slow"}

    async def test_update_cannot_rename(self, provider, client):
        manifest = {**MANIFEST, "metadata": {"name": "other", "namespace": "apps"}}
        with pytest.raises(PermanentProviderError, match="cannot change the identity"):
            await provider.update(
                MANIFEST_TYPE, "v1|ConfigMap|apps|settings", {}, {"manifest": manifest}
            )
        client.replace.assert_not_awaited()

    async def test_destroy_missing_is_ok(self, provider, client):
        client.delete.side_effect = ApiException(status=404, reason="Not Found")
        await provider.destroy(MANIFEST_TYPE, "v1|ConfigMap|apps|settings")

    async def test_unknown_kind(self, provider, client):
        client.resources.get.side_effect = LookupError("no such kind")
        with pytest.raises(PermanentProviderError, match="unknown kind v1/Widget"):
            await provider.destroy(MANIFEST_TYPE, "v1|Widget|apps|w")
