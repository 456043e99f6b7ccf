"""Cloud provider: AWS resources through the Cloud Control API.

Every resource type maps to a CloudFormation registry type. Create, update
and delete requests are asynchronous on the service side; the adapter polls
the request status until it settles.

    providers:
      aws:
        kind: cloud
        region: us-east-1
        poll_interval: 5
        resource_types:          # extends the built-in types
          aws_s3_bucket:
            type_name: AWS::S3::Bucket
            identifier: bucket_name
            force_new: [bucket_name]
            computed: [arn, domain_name]
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from importlib.resources import files
from typing import Any

import aioboto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import ConfigurationError, PermanentProviderError, TransientProviderError
from ..models import AttributeChange
from .base import ResourceSchema, lookup_schema, schemas_from_options

logger = logging.getLogger(__name__)

# ProgressEvent error codes and API error codes that may succeed on retry
TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "NetworkFailure",
        "ResourceConflict",
        "ServiceInternalError",
        "NotStabilized",
        "ServiceLimitExceeded",
        "ThrottlingException",
        "ConcurrentOperationException",
        "NetworkFailureException",
        "ServiceInternalErrorException",
        "HandlerInternalFailureException",
        "ClientTokenConflictException",
    }
)

NOT_FOUND_CODES = frozenset({"NotFound", "ResourceNotFoundException"})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def to_property_name(attribute: str) -> str:
    """cidr_block -> CidrBlock"""
    return "".join(part[:1].upper() + part[1:] for part in attribute.split("_"))


def to_attribute_name(prop: str) -> str:
    """CidrBlock -> cidr_block"""
    return _CAMEL_BOUNDARY.sub("_", prop).lower()


def load_builtin_schemas() -> dict[str, ResourceSchema]:
    """Load the resource types shipped with the package."""
    try:
        raw = yaml.safe_load(files("stratum.providers").joinpath("cloud_types.yaml").read_text())
    except Exception as e:
        raise ConfigurationError(f"Failed to load cloud resource types: {e}") from e
    return {name: ResourceSchema.from_dict(name, body) for name, body in raw.items()}


class CloudProvider:
    """Provider adapter over the AWS Cloud Control API."""

    def __init__(self, name: str = "aws", options: dict[str, Any] | None = None) -> None:
        options = options or {}
        self._name = name
        self.region: str | None = options.get("region")
        self.endpoint_url: str | None = options.get("endpoint_url")
        self.poll_interval = float(options.get("poll_interval", 5.0))
        self.timeout = float(options.get("timeout", 1800.0))
        self._schemas = {**load_builtin_schemas(), **schemas_from_options(options)}
        for schema in self._schemas.values():
            if not schema.options.get("type_name"):
                raise ConfigurationError(
                    f"Resource type {schema.resource_type} of provider {name} needs a type_name"
                )
        self._session: aioboto3.Session | None = None
        self._client: Any = None

    @property
    def name(self) -> str:
        return self._name

    def schema(self, resource_type: str) -> ResourceSchema:
        return lookup_schema(self._name, self._schemas, resource_type)

    async def _get_client(self) -> Any:
        """Get or create the Cloud Control client."""
        if self._client is not None:
            return self._client

        if self._session is None:
            self._session = aioboto3.Session()

        kwargs: dict[str, Any] = {}
        if self.region:
            kwargs["region_name"] = self.region
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url

        self._client = await self._session.client("cloudcontrol", **kwargs).__aenter__()
        return self._client

    async def close(self) -> None:
        """Close the underlying session and client."""
        if self._client is not None:
            try:
                await self._client.__aexit__(None, None, None)
            finally:
                self._client = None
        self._session = None

    # -- translation --------------------------------------------------------------

    def _translate(self, error: Exception, action: str) -> Exception:
        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
            message = f"{self._name}: {action} failed: {error}"
            if code in TRANSIENT_CODES:
                return TransientProviderError(message, code, error)
            return PermanentProviderError(message, code, error)
        if isinstance(error, BotoCoreError):
            # connection and timeout errors from the SDK
            return TransientProviderError(f"{self._name}: {action} failed: {error}", None, error)
        return error

    def _to_properties(self, schema: ResourceSchema, attributes: dict[str, Any]) -> dict[str, Any]:
        return {
            to_property_name(k): v
            for k, v in attributes.items()
            if v is not None and not (schema.is_computed(k) and k != schema.identifier)
        }

    def _to_attributes(
        self, schema: ResourceSchema, identifier: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        attrs = {to_attribute_name(k): v for k, v in properties.items()}
        attrs[schema.identifier] = identifier
        return attrs

    async def _wait(self, event: dict[str, Any], action: str) -> dict[str, Any]:
        """Poll a ProgressEvent until it settles; returns the final event."""
        client = await self._get_client()
        deadline = time.monotonic() + self.timeout
        while event.get("OperationStatus") in ("PENDING", "IN_PROGRESS", "CANCEL_IN_PROGRESS"):
            if time.monotonic() >= deadline:
                raise TransientProviderError(
                    f"{self._name}: {action} did not settle within {self.timeout:.0f}s",
                    "NotStabilized",
                )
            await asyncio.sleep(self.poll_interval)
            try:
                response = await client.get_resource_request_status(
                    RequestToken=event["RequestToken"]
                )
            except (ClientError, BotoCoreError) as e:
                raise self._translate(e, action) from e
            event = response["ProgressEvent"]
            logger.debug("%s: %s is %s", self._name, action, event.get("OperationStatus"))

        if event.get("OperationStatus") != "SUCCESS":
            code = event.get("ErrorCode") or ""
            message = f"{self._name}: {action} failed: {event.get('StatusMessage', code)}"
            if code in TRANSIENT_CODES:
                raise TransientProviderError(message, code)
            raise PermanentProviderError(message, code)
        return event

    # -- Provider protocol ----------------------------------------------------------

    async def read(
        self,
        resource_type: str,
        identifier: str,
        prior: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        schema = self.schema(resource_type)
        client = await self._get_client()
        action = f"read {resource_type} {identifier}"
        try:
            response = await client.get_resource(
                TypeName=schema.options["type_name"], Identifier=identifier
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return None
            raise self._translate(e, action) from e
        except BotoCoreError as e:
            raise self._translate(e, action) from e
        description = response["ResourceDescription"]
        properties = json.loads(description.get("Properties") or "{}")
        attrs = self._to_attributes(schema, description.get("Identifier", identifier), properties)
        if prior is None:
            return attrs
        # properties the configuration never set stay out of state, so
        # service-side defaults are not reported as drift
        return {k: v for k, v in attrs.items() if k in prior or schema.is_computed(k)}

    async def create(self, resource_type: str, desired: dict[str, Any]) -> dict[str, Any]:
        schema = self.schema(resource_type)
        client = await self._get_client()
        action = f"create {resource_type}"
        try:
            response = await client.create_resource(
                TypeName=schema.options["type_name"],
                DesiredState=json.dumps(self._to_properties(schema, desired)),
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, action) from e
        event = await self._wait(response["ProgressEvent"], action)
        identifier = event["Identifier"]
        logger.info("%s: created %s %s", self._name, resource_type, identifier)
        attrs = await self.read(resource_type, identifier, desired)
        if attrs is None:
            raise TransientProviderError(
                f"{self._name}: {resource_type} {identifier} not readable after create", "NotFound"
            )
        return attrs

    async def update(
        self,
        resource_type: str,
        identifier: str,
        diff: dict[str, AttributeChange],
        desired: dict[str, Any],
    ) -> dict[str, Any]:
        schema = self.schema(resource_type)
        patch = []
        for key, change in sorted(diff.items()):
            if schema.is_computed(key):
                continue
            path = f"/{to_property_name(key)}"
            if change.new is None:
                patch.append({"op": "remove", "path": path})
            else:
                patch.append({"op": "add", "path": path, "value": change.new})
        if patch:
            client = await self._get_client()
            action = f"update {resource_type} {identifier}"
            try:
                response = await client.update_resource(
                    TypeName=schema.options["type_name"],
                    Identifier=identifier,
                    PatchDocument=json.dumps(patch),
                )
            except (ClientError, BotoCoreError) as e:
                raise self._translate(e, action) from e
            await self._wait(response["ProgressEvent"], action)
            logger.info("%s: updated %s %s", self._name, resource_type, identifier)
        attrs = await self.read(resource_type, identifier, desired)
        if attrs is None:
            raise PermanentProviderError(
                f"{self._name}: {resource_type} {identifier} does not exist", "NotFound"
            )
        return attrs

    async def destroy(self, resource_type: str, identifier: str) -> None:
        schema = self.schema(resource_type)
        client = await self._get_client()
        action = f"delete {resource_type} {identifier}"
        try:
            response = await client.delete_resource(
                TypeName=schema.options["type_name"], Identifier=identifier
            )
            await self._wait(response["ProgressEvent"], action)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return
            raise self._translate(e, action) from e
        except BotoCoreError as e:
            raise self._translate(e, action) from e
        except PermanentProviderError as e:
            if e.code in NOT_FOUND_CODES:
                return
            raise
        logger.info("%s: deleted %s %s", self._name, resource_type, identifier)
