"""Kubernetes provider: arbitrary objects through the dynamic client.

A single resource type, ``kubernetes_manifest``, holds a complete object
manifest. The identifier is ``apiVersion|kind|namespace|name``. Reads
project the live object onto the keys of the applied manifest, so fields
defaulted by the API server do not show up as drift; the full live object is
kept in the computed ``object`` attribute.

    providers:
      kubernetes:
        kind: kubernetes
        config_file: ~/.kube/config
        context: prod
        default_namespace: default
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import config as k8s_config
from kubernetes_asyncio.client.rest import ApiException
from kubernetes_asyncio.dynamic import DynamicClient

from ..exceptions import PermanentProviderError, TransientProviderError
from ..models import AttributeChange
from .base import ResourceSchema, lookup_schema

logger = logging.getLogger(__name__)

MANIFEST_TYPE = "kubernetes_manifest"

SCHEMAS = {
    MANIFEST_TYPE: ResourceSchema(
        resource_type=MANIFEST_TYPE,
        identifier="id",
        computed=frozenset({"id", "object", "uid", "resource_version"}),
    )
}

TRANSIENT_STATUSES = frozenset({409, 429, 500, 502, 503, 504})


def object_id(api_version: str, kind: str, namespace: str | None, name: str) -> str:
    return "|".join([api_version, kind, namespace or "", name])


def parse_object_id(identifier: str) -> tuple[str, str, str | None, str]:
    parts = identifier.split("|")
    if len(parts) != 4:
        raise PermanentProviderError(f"Invalid kubernetes object id: {identifier!r}")
    api_version, kind, namespace, name = parts
    return api_version, kind, namespace or None, name


def project(live: Any, shape: Any) -> Any:
    """Keep only the parts of ``live`` that ``shape`` declares."""
    if isinstance(shape, dict) and isinstance(live, dict):
        return {k: project(live[k], v) for k, v in shape.items() if k in live}
    if isinstance(shape, list) and isinstance(live, list) and len(shape) == len(live):
        return [project(lv, sv) for lv, sv in zip(live, shape)]
    return live


class KubernetesProvider:
    """Provider adapter over the Kubernetes API."""

    def __init__(self, name: str = "kubernetes", options: dict[str, Any] | None = None) -> None:
        options = options or {}
        self._name = name
        self.config_file: str | None = options.get("config_file")
        self.context: str | None = options.get("context")
        self.in_cluster = bool(options.get("in_cluster", False))
        self.default_namespace: str = options.get("default_namespace", "default")
        self._api: Any = None
        self._client: Any = None

    @property
    def name(self) -> str:
        return self._name

    def schema(self, resource_type: str) -> ResourceSchema:
        return lookup_schema(self._name, SCHEMAS, resource_type)

    async def _get_client(self) -> Any:
        """Get or create the dynamic client."""
        if self._client is not None:
            return self._client
        configuration = k8s_client.Configuration()
        if self.in_cluster:
            k8s_config.load_incluster_config(client_configuration=configuration)
        else:
            await k8s_config.load_kube_config(
                config_file=self.config_file,
                context=self.context,
                client_configuration=configuration,
            )
        self._api = k8s_client.ApiClient(configuration=configuration)
        self._client = await DynamicClient(self._api)
        return self._client

    async def close(self) -> None:
        if self._api is not None:
            try:
                await self._api.close()
            finally:
                self._api = None
        self._client = None

    def _translate(self, error: ApiException, action: str) -> Exception:
        message = f"{self._name}: {action} failed: {error.status} {error.reason}"
        if error.status in TRANSIENT_STATUSES:
            return TransientProviderError(message, str(error.status), error)
        return PermanentProviderError(message, str(error.status), error)

    async def _resource(self, api_version: str, kind: str) -> Any:
        client = await self._get_client()
        try:
            return await client.resources.get(api_version=api_version, kind=kind)
        except ApiException as e:
            raise self._translate(e, f"discover {api_version}/{kind}") from e
        except Exception as e:
            # discovery raises ResourceNotFoundError for unknown kinds
            raise PermanentProviderError(
                f"{self._name}: unknown kind {api_version}/{kind}: {e}"
            ) from e

    def _manifest(self, desired: dict[str, Any]) -> dict[str, Any]:
        manifest = desired.get("manifest")
        if not isinstance(manifest, dict):
            raise PermanentProviderError(f"{MANIFEST_TYPE} requires a 'manifest' mapping")
        for key in ("apiVersion", "kind"):
            if not manifest.get(key):
                raise PermanentProviderError(f"{MANIFEST_TYPE} manifest is missing '{key}'")
        if not manifest.get("metadata", {}).get("name"):
            raise PermanentProviderError(f"{MANIFEST_TYPE} manifest is missing metadata.name")
        return copy.deepcopy(manifest)

    def _namespace(self, resource: Any, manifest: dict[str, Any]) -> str | None:
        if not getattr(resource, "namespaced", True):
            return None
        return manifest.get("metadata", {}).get("namespace") or self.default_namespace

    def _attributes(
        self, live: dict[str, Any], shape: dict[str, Any], namespace: str | None
    ) -> dict[str, Any]:
        metadata = live.get("metadata", {})
        return {
            "manifest": project(live, shape),
            "id": object_id(live["apiVersion"], live["kind"], namespace, metadata["name"]),
            "uid": metadata.get("uid"),
            "resource_version": metadata.get("resourceVersion"),
            "object": live,
        }

    async def read(
        self,
        resource_type: str,
        identifier: str,
        prior: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        self.schema(resource_type)
        api_version, kind, namespace, name = parse_object_id(identifier)
        resource = await self._resource(api_version, kind)
        client = await self._get_client()
        try:
            obj = await client.get(resource, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise self._translate(e, f"read {identifier}") from e
        live = obj.to_dict()
        shape = (prior or {}).get("manifest") or live
        return self._attributes(live, shape, namespace)

    async def create(self, resource_type: str, desired: dict[str, Any]) -> dict[str, Any]:
        self.schema(resource_type)
        manifest = self._manifest(desired)
        resource = await self._resource(manifest["apiVersion"], manifest["kind"])
        namespace = self._namespace(resource, manifest)
        client = await self._get_client()
        action = f"create {manifest['kind']} {manifest['metadata']['name']}"
        try:
            obj = await client.create(resource, body=manifest, namespace=namespace)
        except ApiException as e:
            raise self._translate(e, action) from e
        logger.info("%s: %s", self._name, action)
        return self._attributes(obj.to_dict(), manifest, namespace)

    async def update(
        self,
        resource_type: str,
        identifier: str,
        diff: dict[str, AttributeChange],
        desired: dict[str, Any],
    ) -> dict[str, Any]:
        self.schema(resource_type)
        manifest = self._manifest(desired)
        resource = await self._resource(manifest["apiVersion"], manifest["kind"])
        namespace = self._namespace(resource, manifest)
        new_id = object_id(
            manifest["apiVersion"], manifest["kind"], namespace, manifest["metadata"]["name"]
        )
        if new_id != identifier:
            raise PermanentProviderError(
                f"{self._name}: cannot change the identity of {identifier} to {new_id} in place"
            )
        client = await self._get_client()
        action = f"update {identifier}"
        try:
            current = await client.get(resource, name=manifest["metadata"]["name"], namespace=namespace)
            body = copy.deepcopy(manifest)
            body["metadata"]["resourceVersion"] = current.to_dict()["metadata"]["resourceVersion"]
            obj = await client.replace(
                resource, body=body, name=manifest["metadata"]["name"], namespace=namespace
            )
        except ApiException as e:
            raise self._translate(e, action) from e
        logger.info("%s: %s", self._name, action)
        return self._attributes(obj.to_dict(), manifest, namespace)

    async def destroy(self, resource_type: str, identifier: str) -> None:
        self.schema(resource_type)
        api_version, kind, namespace, name = parse_object_id(identifier)
        resource = await self._resource(api_version, kind)
        client = await self._get_client()
        try:
            await client.delete(resource, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return
            raise self._translate(e, f"delete {identifier}") from e
        logger.info("%s: deleted %s", self._name, identifier)
