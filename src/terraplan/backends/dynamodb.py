"""DynamoDB state backend.

Shared remote state for teams and CI. Each workspace is one partition:

- ``#META``: head serial and lineage (also indexed in GSI1 for listing)
- ``#LOCK``: the advisory lock record, written with a conditional put
- ``#SNAPSHOT#<serial>``: one item per snapshot, the JSON document in ``data``

A commit is a single ``TransactWriteItems`` call that checks the lock record,
bumps the head serial with a compare-and-swap and puts the snapshot item, so
the lock acts cluster-wide and readers never observe a half-written commit.
"""

import logging
import time
from typing import Any

import aioboto3  # type: ignore[import-untyped]
from botocore.exceptions import ClientError

from .. import schema
from ..exceptions import (
    LockConflictError,
    SnapshotNotFoundError,
    StaleLockError,
    StateError,
    VersionConflictError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
)
from ..models import LockToken, SnapshotInfo, StateSnapshot
from ..naming import DEFAULT_TABLE_NAME

logger = logging.getLogger(__name__)


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class DynamoDBBackend:
    """
    Async DynamoDB state backend.

    Args:
        table_name: DynamoDB table name
        region: AWS region
        endpoint_url: Custom endpoint (LocalStack, DynamoDB Local)
    """

    def __init__(
        self,
        table_name: str = DEFAULT_TABLE_NAME,
        region: str | None = None,
        endpoint_url: str | None = None,
    ) -> None:
        self.table_name = table_name
        self.region = region
        self.endpoint_url = endpoint_url
        self._session: aioboto3.Session | None = None
        self._client: Any = None

    async def _get_client(self) -> Any:
        """Get or create the DynamoDB client."""
        if self._client is None:
            self._session = aioboto3.Session()
            self._client = await self._session.client(
                "dynamodb",
                region_name=self.region,
                endpoint_url=self.endpoint_url,
            ).__aenter__()
        return self._client

    async def close(self) -> None:
        """Close the DynamoDB client."""
        if self._client is not None:
            await self._client.__aexit__(None, None, None)
            self._client = None
            self._session = None

    def _key(self, workspace: str, sk: str) -> dict[str, Any]:
        return {"PK": {"S": schema.pk_workspace(workspace)}, "SK": {"S": sk}}

    # -------------------------------------------------------------------------
    # Table operations
    # -------------------------------------------------------------------------

    async def create_table(self) -> None:
        """Create the DynamoDB table if it doesn't exist."""
        client = await self._get_client()
        definition = schema.get_table_definition(self.table_name)

        try:
            await client.create_table(**definition)
            # Wait for table to be active
            waiter = client.get_waiter("table_exists")
            await waiter.wait(TableName=self.table_name)
        except ClientError as e:
            if _error_code(e) != "ResourceInUseException":
                raise
        logger.info("DynamoDB table %s is ready", self.table_name)

    async def delete_table(self) -> None:
        """Delete the DynamoDB table."""
        client = await self._get_client()
        try:
            await client.delete_table(TableName=self.table_name)
        except ClientError as e:
            if _error_code(e) != "ResourceNotFoundException":
                raise

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def _snapshot_item(self, snapshot: StateSnapshot) -> dict[str, Any]:
        return {
            **self._key(snapshot.workspace, schema.sk_snapshot(snapshot.serial)),
            "workspace": {"S": snapshot.workspace},
            "serial": {"N": str(snapshot.serial)},
            "lineage": {"S": snapshot.lineage},
            "created_at": {"S": snapshot.created_at},
            "instance_count": {"N": str(len(snapshot))},
            "data": {"S": snapshot.to_json()},
        }

    def _lock_item(self, token: LockToken) -> dict[str, Any]:
        item: dict[str, Any] = {
            **self._key(token.workspace, schema.sk_lock()),
            "workspace": {"S": token.workspace},
            "lock_id": {"S": token.lock_id},
            "holder": {"S": token.holder},
            "operation": {"S": token.operation},
            "acquired_at": {"N": repr(token.acquired_at)},
        }
        if token.expires_at is not None:
            item["expires_at"] = {"N": repr(token.expires_at)}
        return item

    def _deserialize_lock(self, item: dict[str, Any]) -> LockToken:
        expires_at = item.get("expires_at")
        return LockToken(
            workspace=item["workspace"]["S"],
            lock_id=item["lock_id"]["S"],
            holder=item["holder"]["S"],
            operation=item.get("operation", {}).get("S", ""),
            acquired_at=float(item["acquired_at"]["N"]),
            expires_at=float(expires_at["N"]) if expires_at else None,
        )

    def _deserialize_info(self, item: dict[str, Any]) -> SnapshotInfo:
        return SnapshotInfo(
            workspace=item["workspace"]["S"],
            serial=int(item["serial"]["N"]),
            lineage=item["lineage"]["S"],
            created_at=item["created_at"]["S"],
            instance_count=int(item["instance_count"]["N"]),
        )

    async def _get_meta(self, workspace: str) -> dict[str, Any] | None:
        client = await self._get_client()
        response = await client.get_item(
            TableName=self.table_name,
            Key=self._key(workspace, schema.sk_meta()),
            ConsistentRead=True,
        )
        item: dict[str, Any] | None = response.get("Item")
        return item

    async def _head_serial(self, workspace: str) -> int:
        meta = await self._get_meta(workspace)
        if meta is None:
            raise WorkspaceNotFoundError(workspace)
        return int(meta["serial"]["N"])

    async def _query_partition(self, workspace: str, **kwargs: Any) -> list[dict[str, Any]]:
        client = await self._get_client()
        items: list[dict[str, Any]] = []
        params: dict[str, Any] = {
            "TableName": self.table_name,
            "KeyConditionExpression": "PK = :pk",
            "ExpressionAttributeValues": {":pk": {"S": schema.pk_workspace(workspace)}},
            "ConsistentRead": True,
            **kwargs,
        }
        while True:
            response = await client.query(**params)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            params["ExclusiveStartKey"] = last_key

    # -------------------------------------------------------------------------
    # Workspaces
    # -------------------------------------------------------------------------

    async def list_workspaces(self) -> list[str]:
        client = await self._get_client()
        names: list[str] = []
        params: dict[str, Any] = {
            "TableName": self.table_name,
            "IndexName": schema.GSI1_NAME,
            "KeyConditionExpression": "GSI1PK = :pk",
            "ExpressionAttributeValues": {":pk": {"S": schema.gsi1_pk_workspaces()}},
        }
        while True:
            response = await client.query(**params)
            for item in response.get("Items", []):
                names.append(schema.parse_workspace_pk(item["PK"]["S"]))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return sorted(names)
            params["ExclusiveStartKey"] = last_key

    async def create_workspace(self, snapshot: StateSnapshot) -> None:
        client = await self._get_client()
        workspace = snapshot.workspace
        meta = {
            **self._key(workspace, schema.sk_meta()),
            "workspace": {"S": workspace},
            "serial": {"N": str(snapshot.serial)},
            "lineage": {"S": snapshot.lineage},
            "created_at": {"S": snapshot.created_at},
            "GSI1PK": {"S": schema.gsi1_pk_workspaces()},
            "GSI1SK": {"S": schema.gsi1_sk_workspace(workspace)},
        }
        try:
            await client.transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": meta,
                            "ConditionExpression": "attribute_not_exists(PK)",
                        }
                    },
                    {"Put": {"TableName": self.table_name, "Item": self._snapshot_item(snapshot)}},
                ]
            )
        except ClientError as e:
            if _error_code(e) == "TransactionCanceledException":
                raise WorkspaceExistsError(workspace) from None
            raise

    def _lock_held(self, workspace: str, lock_id: str, now: float) -> dict[str, Any]:
        """Transaction condition: ``lock_id`` is the current, unexpired lock."""
        return {
            "TableName": self.table_name,
            "Key": self._key(workspace, schema.sk_lock()),
            "ConditionExpression": (
                "#lock_id = :lock_id AND "
                "(attribute_not_exists(#expires_at) OR #expires_at > :now)"
            ),
            "ExpressionAttributeNames": {
                "#lock_id": "lock_id",
                "#expires_at": "expires_at",
            },
            "ExpressionAttributeValues": {
                ":lock_id": {"S": lock_id},
                ":now": {"N": repr(now)},
            },
        }

    def _head_is(self, workspace: str, serial: int) -> dict[str, Any]:
        """Transaction condition: META still records ``serial`` as the head."""
        return {
            "TableName": self.table_name,
            "Key": self._key(workspace, schema.sk_meta()),
            "ConditionExpression": "#serial = :expected",
            "ExpressionAttributeNames": {"#serial": "serial"},
            "ExpressionAttributeValues": {":expected": {"N": str(serial)}},
        }

    async def delete_workspace(
        self,
        workspace: str,
        *,
        lock_id: str,
        expected_serial: int,
    ) -> None:
        if await self._get_meta(workspace) is None:
            raise WorkspaceNotFoundError(workspace)
        client = await self._get_client()
        now = time.time()
        try:
            await client.transact_write_items(
                TransactItems=[
                    {"ConditionCheck": self._lock_held(workspace, lock_id, now)},
                    {"ConditionCheck": self._head_is(workspace, expected_serial)},
                ]
            )
        except ClientError as e:
            if _error_code(e) != "TransactionCanceledException":
                raise
            raise await self._commit_conflict(workspace, lock_id, expected_serial, now) from None

        items = await self._query_partition(
            workspace,
            KeyConditionExpression="PK = :pk AND begins_with(SK, :prefix)",
            ExpressionAttributeValues={
                ":pk": {"S": schema.pk_workspace(workspace)},
                ":prefix": {"S": schema.sk_snapshot_prefix()},
            },
            ProjectionExpression="PK, SK",
        )
        await self._batch_delete(items)

        # META and LOCK go together and last, so the workspace stays listed
        # and locked until its history is gone.
        try:
            await client.transact_write_items(
                TransactItems=[
                    {"Delete": self._lock_held(workspace, lock_id, time.time())},
                    {"Delete": self._head_is(workspace, expected_serial)},
                ]
            )
        except ClientError as e:
            if _error_code(e) != "TransactionCanceledException":
                raise
            raise await self._commit_conflict(workspace, lock_id, expected_serial, now) from None
        logger.debug("Deleted %d snapshot(s) of workspace %s", len(items), workspace)

    async def _batch_delete(self, items: list[dict[str, Any]]) -> None:
        client = await self._get_client()
        for start in range(0, len(items), 25):
            batch = items[start : start + 25]
            request: dict[str, Any] = {
                self.table_name: [
                    {"DeleteRequest": {"Key": {"PK": i["PK"], "SK": i["SK"]}}} for i in batch
                ]
            }
            while request:
                response = await client.batch_write_item(RequestItems=request)
                request = response.get("UnprocessedItems") or {}

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def read_snapshot(self, workspace: str, serial: int | None = None) -> StateSnapshot:
        if serial is None:
            serial = await self._head_serial(workspace)
        client = await self._get_client()
        response = await client.get_item(
            TableName=self.table_name,
            Key=self._key(workspace, schema.sk_snapshot(serial)),
            ConsistentRead=True,
        )
        item = response.get("Item")
        if item is None:
            if await self._get_meta(workspace) is None:
                raise WorkspaceNotFoundError(workspace)
            raise SnapshotNotFoundError(workspace, serial)
        return StateSnapshot.from_json(item["data"]["S"])

    async def list_snapshots(self, workspace: str) -> list[SnapshotInfo]:
        if await self._get_meta(workspace) is None:
            raise WorkspaceNotFoundError(workspace)
        items = await self._query_partition(
            workspace,
            KeyConditionExpression="PK = :pk AND begins_with(SK, :prefix)",
            ExpressionAttributeValues={
                ":pk": {"S": schema.pk_workspace(workspace)},
                ":prefix": {"S": schema.sk_snapshot_prefix()},
            },
            ProjectionExpression="#workspace, #serial, #lineage, #created_at, #instance_count",
            ExpressionAttributeNames={
                "#workspace": "workspace",
                "#serial": "serial",
                "#lineage": "lineage",
                "#created_at": "created_at",
                "#instance_count": "instance_count",
            },
        )
        return sorted((self._deserialize_info(i) for i in items), key=lambda i: i.serial)

    async def write_snapshot(
        self,
        snapshot: StateSnapshot,
        *,
        lock_id: str,
        expected_serial: int,
    ) -> None:
        client = await self._get_client()
        workspace = snapshot.workspace
        now = time.time()
        try:
            await client.transact_write_items(
                TransactItems=[
                    {"ConditionCheck": self._lock_held(workspace, lock_id, now)},
                    {
                        "Update": {
                            **self._head_is(workspace, expected_serial),
                            "UpdateExpression": "SET #serial = :new",
                            "ExpressionAttributeValues": {
                                ":new": {"N": str(snapshot.serial)},
                                ":expected": {"N": str(expected_serial)},
                            },
                        }
                    },
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": self._snapshot_item(snapshot),
                            "ConditionExpression": "attribute_not_exists(PK)",
                        }
                    },
                ]
            )
        except ClientError as e:
            if _error_code(e) != "TransactionCanceledException":
                raise
            raise await self._commit_conflict(workspace, lock_id, expected_serial, now) from None
        logger.debug("Wrote snapshot %d of workspace %s", snapshot.serial, workspace)

    async def _commit_conflict(
        self,
        workspace: str,
        lock_id: str,
        expected_serial: int,
        now: float,
    ) -> StateError:
        """Re-read lock and head to explain why a commit transaction was cancelled."""
        head = await self._head_serial(workspace)
        lock = await self.get_lock(workspace)
        if lock is None or lock.lock_id != lock_id:
            return StaleLockError(workspace, lock_id)
        if lock.expired(now):
            return StaleLockError(workspace, lock_id, "lock has expired")
        return VersionConflictError(None, expected_serial, head, workspace=workspace)

    # -------------------------------------------------------------------------
    # Locks
    # -------------------------------------------------------------------------

    async def acquire_lock(self, token: LockToken) -> LockToken:
        client = await self._get_client()
        workspace = token.workspace
        try:
            await client.transact_write_items(
                TransactItems=[
                    {
                        "ConditionCheck": {
                            "TableName": self.table_name,
                            "Key": self._key(workspace, schema.sk_meta()),
                            "ConditionExpression": "attribute_exists(PK)",
                        }
                    },
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": self._lock_item(token),
                            "ConditionExpression": (
                                "attribute_not_exists(PK) OR "
                                "(attribute_exists(#expires_at) AND #expires_at <= :now)"
                            ),
                            "ExpressionAttributeNames": {"#expires_at": "expires_at"},
                            "ExpressionAttributeValues": {":now": {"N": repr(time.time())}},
                        }
                    },
                ]
            )
        except ClientError as e:
            if _error_code(e) != "TransactionCanceledException":
                raise
            if await self._get_meta(workspace) is None:
                raise WorkspaceNotFoundError(workspace) from None
            current = await self.get_lock(workspace)
            if current is None:
                raise LockConflictError(workspace) from None
            raise LockConflictError(
                workspace, current.holder, current.acquired_at, current.lock_id
            ) from None
        return token

    async def get_lock(self, workspace: str) -> LockToken | None:
        client = await self._get_client()
        response = await client.get_item(
            TableName=self.table_name,
            Key=self._key(workspace, schema.sk_lock()),
            ConsistentRead=True,
        )
        item = response.get("Item")
        return self._deserialize_lock(item) if item else None

    async def release_lock(self, workspace: str, lock_id: str) -> bool:
        client = await self._get_client()
        try:
            await client.delete_item(
                TableName=self.table_name,
                Key=self._key(workspace, schema.sk_lock()),
                ConditionExpression="#lock_id = :lock_id",
                ExpressionAttributeNames={"#lock_id": "lock_id"},
                ExpressionAttributeValues={":lock_id": {"S": lock_id}},
            )
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                return False
            raise
        return True
