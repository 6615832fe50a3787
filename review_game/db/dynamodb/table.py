from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Any, Iterable

import boto3
from boto3.dynamodb.types import TypeSerializer
from botocore.config import Config

from .errors import DdbInternal, DdbNotFound, DdbValidation
from .pagination import decode_next_token, encode_next_token
from .retry import RetryPolicy, ddb_call


_serializer = TypeSerializer()

# DynamoDB caps TransactWriteItems at 100 actions.
MAX_TRANSACT_ITEMS = 100

# botocore retries throttling adaptively; ddb_call retries the transient codes in retry.py.
_BOTO_CONFIG = Config(retries={"max_attempts": 10, "mode": "adaptive"}, connect_timeout=2, read_timeout=10)


@lru_cache(maxsize=4)
def _connection(region: str, endpoint_url: str | None) -> tuple[Any, Any]:
    """Process-wide (resource, client) pair per region and endpoint."""
    kwargs: dict[str, Any] = {"region_name": region, "config": _BOTO_CONFIG}
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    return boto3.resource("dynamodb", **kwargs), boto3.client("dynamodb", **kwargs)


def _serialize_item(item: dict[str, Any]) -> dict[str, Any]:
    # Client API expects AttributeValue shape ({'S': '...'}, {'N': '1'}, ...).
    return {k: _serializer.serialize(v) for k, v in item.items()}


def plain(value: Any) -> Any:
    """Convert boto3's Decimal numbers back to int/float, recursively."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain(v) for v in value]
    if isinstance(value, set):
        return sorted(plain(v) for v in value)
    return value


@dataclass(slots=True)
class Page:
    items: list[dict[str, Any]]
    next_token: str | None


class DynamoTable:
    def __init__(self, *, table_name: str, region: str, endpoint_url: str | None = None):
        self.table_name = str(table_name)
        resource, self._client = _connection(region, endpoint_url or None)
        self._table = resource.Table(self.table_name)

    # --- basic operations ---

    def get_item(self, *, key: dict[str, Any], consistent_read: bool = False) -> dict[str, Any] | None:
        def _op():
            resp = self._table.get_item(Key=key, ConsistentRead=bool(consistent_read))
            return resp.get("Item")

        return ddb_call("GetItem", _op, table_name=self.table_name, key=key)

    def get_required(self, *, key: dict[str, Any], message: str = "Item not found") -> dict[str, Any]:
        item = self.get_item(key=key)
        if not item:
            raise DdbNotFound(message=message, operation="GetItem", table_name=self.table_name, key=key)
        return item

    def put_item(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        def _op():
            kwargs: dict[str, Any] = {"Item": item}
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names
            if expression_attribute_values:
                kwargs["ExpressionAttributeValues"] = expression_attribute_values
            return self._table.put_item(**kwargs)

        return ddb_call(
            "PutItem",
            _op,
            table_name=self.table_name,
            key={"pk": item.get("pk"), "sk": item.get("sk")},
        )

    def delete_item(
        self,
        *,
        key: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        def _op():
            kwargs: dict[str, Any] = {"Key": key}
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names
            if expression_attribute_values:
                kwargs["ExpressionAttributeValues"] = expression_attribute_values
            return self._table.delete_item(**kwargs)

        return ddb_call("DeleteItem", _op, table_name=self.table_name, key=key)

    def update_item(
        self,
        *,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any] | None,
        condition_expression: str | None = None,
        return_values: str = "ALL_NEW",
    ) -> dict[str, Any] | None:
        def _op():
            kwargs: dict[str, Any] = {
                "Key": key,
                "UpdateExpression": update_expression,
                "ReturnValues": return_values,
            }
            if expression_attribute_values:
                kwargs["ExpressionAttributeValues"] = expression_attribute_values
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression
            resp = self._table.update_item(**kwargs)
            return resp.get("Attributes")

        return ddb_call("UpdateItem", _op, table_name=self.table_name, key=key)

    def batch_delete(self, *, keys: Iterable[dict[str, Any]]) -> int:
        """Unconditional bulk delete; batch_writer handles 25-item chunking and unprocessed retries."""
        key_list = list(keys)
        if not key_list:
            return 0

        def _op():
            with self._table.batch_writer() as batch:
                for k in key_list:
                    batch.delete_item(Key=k)
            return len(key_list)

        return ddb_call("BatchWriteItem", _op, table_name=self.table_name)

    def batch_put(self, *, items: Iterable[dict[str, Any]]) -> int:
        item_list = list(items)
        if not item_list:
            return 0

        def _op():
            with self._table.batch_writer() as batch:
                for it in item_list:
                    batch.put_item(Item=it)
            return len(item_list)

        return ddb_call("BatchWriteItem", _op, table_name=self.table_name)

    # --- query/pagination ---

    def query_page(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        limit: int = 50,
        scan_index_forward: bool = False,
        filter_expression: Any | None = None,
        next_token: str | None = None,
        consistent_read: bool = False,
    ) -> Page:
        lim = max(1, min(500, int(limit or 50)))
        lek = decode_next_token(next_token) if next_token else None

        def _op():
            kwargs: dict[str, Any] = {
                "KeyConditionExpression": key_condition_expression,
                "ScanIndexForward": bool(scan_index_forward),
                "Limit": lim,
            }
            if index_name:
                kwargs["IndexName"] = index_name
            elif consistent_read:
                # GSIs do not support strongly consistent reads.
                kwargs["ConsistentRead"] = True
            if filter_expression is not None:
                kwargs["FilterExpression"] = filter_expression
            # Only pass ExclusiveStartKey when present.
            if isinstance(lek, dict) and lek:
                kwargs["ExclusiveStartKey"] = lek
            return self._table.query(**kwargs)

        resp = ddb_call("Query", _op, table_name=self.table_name)
        items = resp.get("Items") or []
        return Page(items=items, next_token=encode_next_token(resp.get("LastEvaluatedKey")))

    def query_all(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        scan_index_forward: bool = True,
        filter_expression: Any | None = None,
        consistent_read: bool = False,
        max_items: int = 5000,
    ) -> list[dict[str, Any]]:
        """Follow pagination for bounded item collections (teams, questions, wagers)."""
        out: list[dict[str, Any]] = []
        token: str | None = None
        while True:
            pg = self.query_page(
                key_condition_expression=key_condition_expression,
                index_name=index_name,
                limit=500,
                scan_index_forward=scan_index_forward,
                filter_expression=filter_expression,
                next_token=token,
                consistent_read=consistent_read,
            )
            out.extend(pg.items)
            token = pg.next_token
            if not token or len(out) >= max_items:
                return out[:max_items]

    # --- transactions ---

    def transact_write(
        self,
        *,
        puts: Iterable[dict[str, Any]] = (),
        deletes: Iterable[dict[str, Any]] = (),
        updates: Iterable[dict[str, Any]] = (),
        condition_checks: Iterable[dict[str, Any]] = (),
        retry_policy: RetryPolicy | None = None,
    ) -> dict[str, Any]:
        # Entries must already be in client shape (see tx_* builders).
        items: list[dict[str, Any]] = []
        for c in condition_checks:
            items.append({"ConditionCheck": c})
        for p in puts:
            items.append({"Put": p})
        for d in deletes:
            items.append({"Delete": d})
        for u in updates:
            items.append({"Update": u})

        if not items:
            return {"ok": True}
        if len(items) > MAX_TRANSACT_ITEMS:
            raise DdbValidation(
                message=f"Transaction too large ({len(items)} > {MAX_TRANSACT_ITEMS} items)",
                operation="TransactWriteItems",
                table_name=self.table_name,
            )

        def _op():
            return self._client.transact_write_items(TransactItems=items)

        # Transaction conflicts are mapped retryable by the retry layer.
        return ddb_call(
            "TransactWriteItems",
            _op,
            table_name=self.table_name,
            retry_policy=retry_policy or RetryPolicy(max_attempts=8, base_delay_s=0.08, max_delay_s=2.0),
        )

    # Builders for transact items (client shape)

    def _tx_common(
        self,
        out: dict[str, Any],
        *,
        condition_expression: str | None,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any] | None,
    ) -> dict[str, Any]:
        if condition_expression:
            out["ConditionExpression"] = condition_expression
        if expression_attribute_names:
            out["ExpressionAttributeNames"] = expression_attribute_names
        if expression_attribute_values:
            out["ExpressionAttributeValues"] = _serialize_item(expression_attribute_values)
        return out

    def tx_put(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._tx_common(
            {"TableName": self.table_name, "Item": _serialize_item(item)},
            condition_expression=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
        )

    def tx_delete(
        self,
        *,
        key: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._tx_common(
            {"TableName": self.table_name, "Key": _serialize_item(key)},
            condition_expression=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
        )

    def tx_update(
        self,
        *,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any]:
        return self._tx_common(
            {"TableName": self.table_name, "Key": _serialize_item(key), "UpdateExpression": update_expression},
            condition_expression=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
        )

    def tx_condition_check(
        self,
        *,
        key: dict[str, Any],
        condition_expression: str,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._tx_common(
            {"TableName": self.table_name, "Key": _serialize_item(key)},
            condition_expression=condition_expression,
            expression_attribute_names=expression_attribute_names,
            expression_attribute_values=expression_attribute_values,
        )


def get_main_table() -> DynamoTable:
    from ...settings import settings

    if not settings.ddb_table_name:
        raise DdbInternal(message="DDB_TABLE_NAME is not set", operation="Config")
    return DynamoTable(
        table_name=settings.ddb_table_name,
        region=settings.aws_region,
        endpoint_url=settings.ddb_endpoint_url,
    )
