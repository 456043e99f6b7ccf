"""Helm provider: chart releases through the helm binary.

Resource type ``helm_release``:

    resources:
      helm_release:
        karpenter:
          provider: helm
          name: karpenter
          namespace: kube-system
          chart: oci://public.ecr.aws/karpenter/karpenter
          version: 1.0.6
          values:
            settings:
              clusterName: ${aws_eks_cluster.main.name}

Releases are installed and upgraded with ``helm upgrade --install``; the
identifier is ``namespace/name``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from typing import Any

import yaml

from ..exceptions import PermanentProviderError, TransientProviderError
from ..models import AttributeChange
from .base import ResourceSchema, lookup_schema

logger = logging.getLogger(__name__)

RELEASE_TYPE = "helm_release"

SCHEMAS = {
    RELEASE_TYPE: ResourceSchema(
        resource_type=RELEASE_TYPE,
        identifier="id",
        force_new=frozenset({"name", "namespace"}),
        computed=frozenset({"id", "revision", "status", "app_version"}),
    )
}

# stderr fragments of failures that may succeed on retry
TRANSIENT_MARKERS = (
    "another operation (install/upgrade/rollback) is in progress",
    "timed out waiting",
    "context deadline exceeded",
    "connection refused",
    "i/o timeout",
    "tls handshake timeout",
    "too many requests",
    "the server is currently unable to handle the request",
)

NOT_FOUND_MARKERS = ("release: not found", "not found")

# attributes only echoed back when the configuration sets them
OPTIONAL_ATTRIBUTES = ("repository", "create_namespace")


class HelmCommandError(Exception):
    """A helm invocation exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(f"helm {' '.join(args[:2])} exited {returncode}: {self.stderr}")

    @property
    def not_found(self) -> bool:
        lowered = self.stderr.lower()
        return any(marker in lowered for marker in NOT_FOUND_MARKERS)

    @property
    def transient(self) -> bool:
        lowered = self.stderr.lower()
        return any(marker in lowered for marker in TRANSIENT_MARKERS)


def release_id(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def parse_release_id(identifier: str) -> tuple[str, str]:
    namespace, sep, name = identifier.partition("/")
    if not sep or not namespace or not name:
        raise PermanentProviderError(f"Invalid helm release id: {identifier!r}")
    return namespace, name


class HelmProvider:
    """Provider adapter over the helm CLI."""

    def __init__(self, name: str = "helm", options: dict[str, Any] | None = None) -> None:
        options = options or {}
        self._name = name
        self.binary: str = options.get("binary", "helm")
        self.kube_context: str | None = options.get("kube_context")
        self.kubeconfig: str | None = options.get("kubeconfig")
        self.timeout: str = str(options.get("timeout", "5m"))
        self.wait = bool(options.get("wait", True))

    @property
    def name(self) -> str:
        return self._name

    def schema(self, resource_type: str) -> ResourceSchema:
        return lookup_schema(self._name, SCHEMAS, resource_type)

    async def close(self) -> None:
        pass

    def _global_args(self) -> list[str]:
        args: list[str] = []
        if self.kube_context:
            args += ["--kube-context", self.kube_context]
        if self.kubeconfig:
            args += ["--kubeconfig", self.kubeconfig]
        return args

    async def _helm(self, *args: str) -> str:
        """Run helm and return stdout."""
        argv = [*args, *self._global_args()]
        logger.debug("Running %s %s", self.binary, " ".join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise PermanentProviderError(f"{self._name}: helm binary '{self.binary}' not found") from e
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise HelmCommandError(list(args), process.returncode or 1, stderr.decode())
        return stdout.decode()

    def _translate(self, error: HelmCommandError, action: str) -> Exception:
        message = f"{self._name}: {action} failed: {error.stderr}"
        if error.transient:
            return TransientProviderError(message, str(error.returncode), error)
        return PermanentProviderError(message, str(error.returncode), error)

    async def _status(
        self, namespace: str, name: str, prior: dict[str, Any] | None
    ) -> dict[str, Any] | None:
        action = f"read release {namespace}/{name}"
        try:
            status = json.loads(await self._helm("status", name, "-n", namespace, "-o", "json"))
            values = json.loads(
                await self._helm("get", "values", name, "-n", namespace, "-o", "json")
            )
        except HelmCommandError as e:
            if e.not_found:
                return None
            raise self._translate(e, action) from e

        metadata = status.get("chart", {}).get("metadata", {})
        attrs: dict[str, Any] = {
            "id": release_id(namespace, name),
            "name": name,
            "chart": (prior or {}).get("chart") or metadata.get("name"),
            "revision": status.get("version"),
            "status": status.get("info", {}).get("status"),
            "app_version": metadata.get("appVersion"),
        }
        for key in OPTIONAL_ATTRIBUTES:
            if prior is None or key in prior:
                attrs[key] = (prior or {}).get(key)
        if prior is None or "values" in prior:
            attrs["values"] = values or {}
        if prior is None or "namespace" in prior:
            attrs["namespace"] = namespace
        if prior is None or "version" in prior:
            attrs["version"] = metadata.get("version")
        return attrs

    async def read(
        self,
        resource_type: str,
        identifier: str,
        prior: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        self.schema(resource_type)
        namespace, name = parse_release_id(identifier)
        return await self._status(namespace, name, prior)

    async def _upgrade(self, desired: dict[str, Any], action: str) -> dict[str, Any]:
        name = desired.get("name")
        chart = desired.get("chart")
        if not name or not chart:
            raise PermanentProviderError(f"{RELEASE_TYPE} requires 'name' and 'chart'")
        namespace = desired.get("namespace") or "default"

        args = ["upgrade", "--install", str(name), str(chart), "-n", namespace, "-o", "json"]
        if desired.get("version"):
            args += ["--version", str(desired["version"])]
        if desired.get("repository"):
            args += ["--repo", str(desired["repository"])]
        if desired.get("create_namespace"):
            args.append("--create-namespace")
        if self.wait:
            args += ["--wait", "--timeout", self.timeout]

        fd, values_path = tempfile.mkstemp(prefix="stratum-values-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(desired.get("values") or {}, f)
            await self._helm(*args, "-f", values_path)
        except HelmCommandError as e:
            raise self._translate(e, action) from e
        finally:
            os.unlink(values_path)

        logger.info("%s: %s", self._name, action)
        attrs = await self._status(namespace, str(name), desired)
        if attrs is None:
            raise TransientProviderError(f"{self._name}: release {namespace}/{name} not found after {action}")
        return attrs

    async def create(self, resource_type: str, desired: dict[str, Any]) -> dict[str, Any]:
        self.schema(resource_type)
        return await self._upgrade(desired, f"install {desired.get('name')}")

    async def update(
        self,
        resource_type: str,
        identifier: str,
        diff: dict[str, AttributeChange],
        desired: dict[str, Any],
    ) -> dict[str, Any]:
        self.schema(resource_type)
        return await self._upgrade(desired, f"upgrade {identifier}")

    async def destroy(self, resource_type: str, identifier: str) -> None:
        self.schema(resource_type)
        namespace, name = parse_release_id(identifier)
        try:
            await self._helm("uninstall", name, "-n", namespace)
        except HelmCommandError as e:
            if e.not_found:
                return
            raise self._translate(e, f"uninstall {identifier}") from e
        logger.info("%s: uninstalled %s", self._name, identifier)
