"""
DynamoDB wiki table implementation.

This module provides the production backend of the WikiTable protocol on
top of aiobotocore. Items are converted with boto3's TypeSerializer and
TypeDeserializer; numbers travel as Decimal on the wire and come back as
int or float.

Invariants:
    - Every call targets the single configured table (and its one GSI)
    - Throttling, 5xx and connection failures surface as UpstreamTransientError
    - All other client errors surface as StoreError, except a failed
      update_ext() condition, which returns False

How to change safely:
    - Test with DynamoDB Local or LocalStack before deploying to AWS
    - BatchWriteItem accepts at most 25 items; chunking lives in store.batch
    - Keep the transient code list in sync with AWS retryable errors
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from aiobotocore.session import get_session
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError, EndpointConnectionError

from ..config import DynamoConfig
from ..errors import StoreError, UpstreamTransientError
from ..keys import GSI_PK_ATTR, GSI_SK_ATTR, PK_ATTR, SK_ATTR
from .base import Item, QueryPage

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
        "InternalServerError",
        "ServiceUnavailable",
    }
)


def _to_wire(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_wire(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_wire(v) for v in value]
    return value


def _from_wire(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_wire(v) for k, v in value.items()}
    if isinstance(value, (list, set)):
        return [_from_wire(v) for v in value]
    return value


class DynamoWikiTable:
    """DynamoDB implementation of WikiTable protocol.

    Attributes:
        config: DynamoDB configuration
        client: DynamoDB client (created on connect)

    Example:
        >>> config = DynamoConfig(table_name="Wiki", region="us-east-1")
        >>> table = DynamoWikiTable(config)
        >>> await table.connect()
        >>> item = await table.get("Document::1", "Document::v_latest", consistent=True)
    """

    def __init__(self, config: DynamoConfig) -> None:
        self.config = config
        self._session = None
        self._client_ctx = None
        self._client = None
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the client and verify the table exists.

        Raises:
            UpstreamTransientError: If the endpoint cannot be reached
            StoreError: If the table does not exist
        """
        if self._client is not None:
            return

        self._session = get_session()
        client_kwargs: dict[str, Any] = {"region_name": self.config.region}
        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id and self.config.secret_access_key:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._client_ctx = self._session.create_client("dynamodb", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()

        try:
            await self._call("describe_table", TableName=self.config.table_name)
        except StoreError as e:
            await self.close()
            if e.details.get("error_code") == "ResourceNotFoundException":
                raise StoreError(
                    f"DynamoDB table '{self.config.table_name}' not found",
                    details={"table": self.config.table_name},
                ) from e
            raise
        except UpstreamTransientError:
            await self.close()
            raise

        logger.info(
            "Connected to DynamoDB",
            extra={
                "table": self.config.table_name,
                "region": self.config.region,
                "endpoint": self.config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        """Close the DynamoDB client."""
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing DynamoDB client: {e}")

        self._client = None
        self._client_ctx = None
        self._session = None

    async def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        if self._client is None:
            raise StoreError("Not connected to DynamoDB")
        try:
            return await getattr(self._client, operation)(**kwargs)
        except EndpointConnectionError as e:
            raise UpstreamTransientError(
                f"Failed to reach DynamoDB endpoint: {e}",
                details={"operation": operation},
            ) from e
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in TRANSIENT_ERROR_CODES:
                raise UpstreamTransientError(
                    f"DynamoDB {operation} failed transiently: {error_code}",
                    details={"operation": operation, "error_code": error_code},
                ) from e
            raise StoreError(
                f"DynamoDB {operation} failed: {e}",
                details={"operation": operation, "error_code": error_code},
            ) from e

    def _serialize(self, item: Item) -> dict[str, Any]:
        return {key: self._serializer.serialize(_to_wire(value)) for key, value in item.items()}

    def _deserialize(self, item: dict[str, Any]) -> Item:
        return {key: _from_wire(self._deserializer.deserialize(value)) for key, value in item.items()}

    async def get(self, pk: str, sk: str, consistent: bool = False) -> Item | None:
        response = await self._call(
            "get_item",
            TableName=self.config.table_name,
            Key=self._serialize({PK_ATTR: pk, SK_ATTR: sk}),
            ConsistentRead=consistent,
        )
        item = response.get("Item")
        return self._deserialize(item) if item else None

    async def put(self, item: Item) -> None:
        await self._call("put_item", TableName=self.config.table_name, Item=self._serialize(item))

    async def batch_write(self, items: list[Item]) -> list[Item]:
        if not items:
            return []
        table = self.config.table_name
        response = await self._call(
            "batch_write_item",
            RequestItems={table: [{"PutRequest": {"Item": self._serialize(item)}} for item in items]},
        )
        unprocessed = response.get("UnprocessedItems", {}).get(table, [])
        return [self._deserialize(request["PutRequest"]["Item"]) for request in unprocessed]

    async def update_ext(self, pk: str, sk: str, ext: dict[str, Any], expected_version: str) -> bool:
        try:
            await self._call(
                "update_item",
                TableName=self.config.table_name,
                Key=self._serialize({PK_ATTR: pk, SK_ATTR: sk}),
                UpdateExpression="SET #ext = :ext",
                ConditionExpression="#version = :version",
                ExpressionAttributeNames={"#ext": "Ext", "#version": "Version"},
                ExpressionAttributeValues=self._serialize({":ext": ext, ":version": expected_version}),
            )
        except StoreError as e:
            if e.details.get("error_code") == "ConditionalCheckFailedException":
                return False
            raise
        return True

    async def query(
        self,
        pk: str,
        *,
        sk_prefix: str | None = None,
        sk_between: tuple[str, str] | None = None,
        sk_equals: str | None = None,
        index: str | None = None,
        forward: bool = True,
        limit: int | None = None,
        start_key: Item | None = None,
    ) -> QueryPage:
        pk_attr, sk_attr = (PK_ATTR, SK_ATTR) if index is None else (GSI_PK_ATTR, GSI_SK_ATTR)
        names = {"#pk": pk_attr}
        values: dict[str, Any] = {":pk": pk}
        condition = "#pk = :pk"

        if sk_prefix is not None:
            names["#sk"] = sk_attr
            values[":sk"] = sk_prefix
            condition += " AND begins_with(#sk, :sk)"
        elif sk_between is not None:
            names["#sk"] = sk_attr
            values[":lo"], values[":hi"] = sk_between
            condition += " AND #sk BETWEEN :lo AND :hi"
        elif sk_equals is not None:
            names["#sk"] = sk_attr
            values[":sk"] = sk_equals
            condition += " AND #sk = :sk"

        kwargs: dict[str, Any] = {
            "TableName": self.config.table_name,
            "KeyConditionExpression": condition,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": self._serialize(values),
            "ScanIndexForward": forward,
        }
        if index is not None:
            kwargs["IndexName"] = index
        if limit is not None:
            kwargs["Limit"] = limit
        if start_key is not None:
            kwargs["ExclusiveStartKey"] = self._serialize(start_key)

        response = await self._call("query", **kwargs)
        last_key = response.get("LastEvaluatedKey")
        return QueryPage(
            items=[self._deserialize(item) for item in response.get("Items", [])],
            last_key=self._deserialize(last_key) if last_key else None,
        )
