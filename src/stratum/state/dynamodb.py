"""DynamoDB state backend.

One table can hold many states, each under its own key:

    PK = STATE#<key>   SK = DOCUMENT   -> serial, lineage, document (JSON)
    PK = STATE#<key>   SK = LOCK       -> lock_id, info (JSON)

Saves are conditional on the stored serial, and the lock is a conditional
put of the lock item, so concurrent runs can never interleave writes.

    backend:
      type: dynamodb
      table: stratum-state
      key: platform/prod
      region: us-east-1
"""

from __future__ import annotations

import json
import logging
from typing import Any

import boto3
from botocore.exceptions import ClientError

from ..exceptions import LockConflictError, LockNotHeldError, StateConflictError, StateError
from ..models import StateDocument
from .store import LockInfo, decode_document

logger = logging.getLogger(__name__)

SK_DOCUMENT = "DOCUMENT"
SK_LOCK = "LOCK"


class DynamoDBStateStore:
    """State kept in a DynamoDB table."""

    def __init__(
        self,
        table: str,
        key: str = "default",
        region: str | None = None,
        endpoint_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._table = table
        self._key = key
        self._client = client or boto3.client(
            "dynamodb", region_name=region, endpoint_url=endpoint_url
        )

    @classmethod
    def from_options(cls, options: dict[str, Any]) -> DynamoDBStateStore:
        if not options.get("table"):
            raise StateError("dynamodb backend requires a 'table' option")
        return cls(
            table=options["table"],
            key=options.get("key", "default"),
            region=options.get("region"),
            endpoint_url=options.get("endpoint_url"),
        )

    @property
    def pk(self) -> str:
        return f"STATE#{self._key}"

    def describe(self) -> str:
        return f"dynamodb://{self._table}/{self._key}"

    def create_table(self) -> None:
        """Create the state table (on-demand billing) if it does not exist."""
        try:
            self._client.create_table(
                TableName=self._table,
                KeySchema=[
                    {"AttributeName": "PK", "KeyType": "HASH"},
                    {"AttributeName": "SK", "KeyType": "RANGE"},
                ],
                AttributeDefinitions=[
                    {"AttributeName": "PK", "AttributeType": "S"},
                    {"AttributeName": "SK", "AttributeType": "S"},
                ],
                BillingMode="PAY_PER_REQUEST",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceInUseException":
                raise StateError(f"Cannot create state table {self._table}: {e}") from e
            return
        self._client.get_waiter("table_exists").wait(TableName=self._table)
        logger.info("Created state table %s", self._table)

    def _get(self, sk: str) -> dict[str, Any] | None:
        try:
            response = self._client.get_item(
                TableName=self._table,
                Key={"PK": {"S": self.pk}, "SK": {"S": sk}},
                ConsistentRead=True,
            )
        except ClientError as e:
            raise StateError(f"Cannot read state from {self.describe()}: {e}") from e
        return response.get("Item")

    def load(self) -> StateDocument:
        item = self._get(SK_DOCUMENT)
        if item is None:
            logger.debug("No state at %s, starting empty", self.describe())
            return StateDocument()
        try:
            data = json.loads(item["document"]["S"])
        except (KeyError, json.JSONDecodeError) as e:
            raise StateError(f"State at {self.describe()} is malformed: {e}") from e
        return decode_document(data)

    def save(self, document: StateDocument) -> None:
        item = {
            "PK": {"S": self.pk},
            "SK": {"S": SK_DOCUMENT},
            "serial": {"N": str(document.serial)},
            "lineage": {"S": document.lineage},
            "document": {"S": json.dumps(document.to_dict(), sort_keys=True)},
        }
        try:
            self._client.put_item(
                TableName=self._table,
                Item=item,
                ConditionExpression=(
                    "attribute_not_exists(PK) OR (serial = :prev AND lineage = :lineage)"
                ),
                ExpressionAttributeValues={
                    ":prev": {"N": str(document.serial - 1)},
                    ":lineage": {"S": document.lineage},
                },
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise StateConflictError(document.serial - 1) from e
            raise StateError(f"Cannot write state to {self.describe()}: {e}") from e
        logger.debug("Saved state serial %d to %s", document.serial, self.describe())

    def _held(self) -> LockInfo | None:
        item = self._get(SK_LOCK)
        if item is None:
            return None
        return LockInfo.from_dict(json.loads(item.get("info", {}).get("S", "{}")))

    def lock(self, info: LockInfo) -> LockInfo:
        try:
            self._client.put_item(
                TableName=self._table,
                Item={
                    "PK": {"S": self.pk},
                    "SK": {"S": SK_LOCK},
                    "lock_id": {"S": info.id},
                    "info": {"S": json.dumps(info.to_dict())},
                },
                ConditionExpression="attribute_not_exists(PK)",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                held = self._held()
                raise LockConflictError(
                    held.id if held else None, held.to_dict() if held else None
                ) from None
            raise StateError(f"Cannot lock state at {self.describe()}: {e}") from e
        return info

    def unlock(self, lock_id: str) -> None:
        try:
            self._client.delete_item(
                TableName=self._table,
                Key={"PK": {"S": self.pk}, "SK": {"S": SK_LOCK}},
                ConditionExpression="lock_id = :id",
                ExpressionAttributeValues={":id": {"S": lock_id}},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                held = self._held()
                raise LockNotHeldError(lock_id, held.id if held else None) from None
            raise StateError(f"Cannot unlock state at {self.describe()}: {e}") from e
        logger.debug("Released state lock %s", lock_id)

    def force_unlock(self, lock_id: str) -> None:
        logger.warning("Force-unlocking state lock %s at %s", lock_id, self.describe())
        self.unlock(lock_id)
