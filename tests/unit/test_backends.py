"""Backend-specific tests: storage layout and edge cases."""

import json

import pytest

from terraplan import (
    DynamoDBBackend,
    LocalBackend,
    LockConflictError,
    MemoryBackend,
    ResourceAddress,
    ResourceInstance,
    StateBackendProtocol,
    StateMutation,
    StateSnapshot,
    StateStore,
    VersionConflictError,
    WorkspaceNotFoundError,
    schema,
)

RG1 = ResourceAddress("azurerm_resource_group", "rg1")


def put_rg1():
    return StateMutation.put(ResourceInstance(RG1, "x"), None)


class TestProtocol:
    """Every backend satisfies StateBackendProtocol."""

    @pytest.mark.parametrize("backend", [MemoryBackend(), LocalBackend("/tmp/unused")])
    def test_runtime_checkable(self, backend):
        assert isinstance(backend, StateBackendProtocol)

    def test_dynamodb_runtime_checkable(self):
        assert isinstance(DynamoDBBackend("t", region="us-east-1"), StateBackendProtocol)


class TestMemoryBackend:
    """Tests for MemoryBackend."""

    async def test_write_requires_expected_serial(self):
        backend = MemoryBackend()
        await backend.create_workspace(StateSnapshot.empty("ws", "L"))
        store = StateStore(backend)
        token = await store.acquire_lock("ws")
        snapshot = StateSnapshot("ws", 5, "L", "t")
        with pytest.raises(VersionConflictError):
            await backend.write_snapshot(snapshot, lock_id=token.lock_id, expected_serial=4)

    async def test_lock_on_missing_workspace(self):
        store = StateStore(MemoryBackend())
        with pytest.raises(WorkspaceNotFoundError):
            await store.acquire_lock("missing")


class TestLocalBackend:
    """Tests for LocalBackend file layout."""

    async def test_layout(self, tmp_path):
        store = StateStore(LocalBackend(tmp_path), holder="tester@test")
        async with store.lock("default") as token:
            lock_file = tmp_path / "default" / "lock.json"
            assert json.loads(lock_file.read_text())["holder"] == "tester@test"
            await store.commit("default", token, [put_rg1()])
        snapshots = sorted(p.name for p in (tmp_path / "default" / "snapshots").iterdir())
        assert snapshots == ["000000000000.json", "000000000001.json"]
        assert not lock_file.exists()
        data = json.loads((tmp_path / "default" / "snapshots" / snapshots[1]).read_text())
        assert data["instances"][0]["address"] == str(RG1)

    async def test_state_survives_new_backend(self, tmp_path):
        store = StateStore(LocalBackend(tmp_path))
        async with store.lock("default") as token:
            await store.commit("default", token, [put_rg1()])
        reopened = StateStore(LocalBackend(tmp_path))
        head = await reopened.read("default")
        assert head.serial == 1
        assert head.get(RG1).external_id == "x"

    async def test_lock_held_across_backends(self, tmp_path):
        """Two processes sharing a directory see each other's locks."""
        first = StateStore(LocalBackend(tmp_path), holder="first@test")
        second = StateStore(LocalBackend(tmp_path), holder="second@test")
        await first.acquire_lock("default")
        with pytest.raises(LockConflictError) as exc_info:
            await second.acquire_lock("default")
        assert exc_info.value.holder == "first@test"

    async def test_stray_files_ignored(self, tmp_path):
        store = StateStore(LocalBackend(tmp_path))
        await store.read("default")
        (tmp_path / "default" / "snapshots" / ".000000000001.json.abc.tmp").write_text("{")
        (tmp_path / "not-a-workspace").mkdir()
        assert (await store.read("default")).serial == 0
        assert await store.list_workspaces() == ["default"]

    async def test_missing_root_lists_nothing(self, tmp_path):
        assert await LocalBackend(tmp_path / "nope").list_workspaces() == []


class TestDynamoDBBackend:
    """Tests for DynamoDBBackend against moto."""

    async def test_create_table_is_idempotent(self, dynamodb_backend):
        await dynamodb_backend.create_table()

    async def test_item_layout(self, dynamodb_backend):
        store = StateStore(dynamodb_backend, holder="tester@test")
        async with store.lock("default") as token:
            await store.commit("default", token, [put_rg1()])
        client = await dynamodb_backend._get_client()
        response = await client.query(
            TableName=dynamodb_backend.table_name,
            KeyConditionExpression="PK = :pk",
            ExpressionAttributeValues={":pk": {"S": schema.pk_workspace("default")}},
        )
        keys = sorted(item["SK"]["S"] for item in response["Items"])
        assert keys == [schema.SK_META, schema.sk_snapshot(0), schema.sk_snapshot(1)]
        meta = next(i for i in response["Items"] if i["SK"]["S"] == schema.SK_META)
        assert meta["serial"]["N"] == "1"
        assert meta["GSI1PK"]["S"] == schema.GSI1_PK_WORKSPACES

    async def test_lock_record(self, dynamodb_backend):
        store = StateStore(dynamodb_backend, holder="tester@test", lock_ttl=60)
        token = await store.acquire_lock("default", "plan")
        current = await dynamodb_backend.get_lock("default")
        assert current.lock_id == token.lock_id
        assert current.operation == "plan"
        assert current.expires_at == pytest.approx(token.expires_at)

    async def test_stale_serial_rejected(self, dynamodb_backend):
        store = StateStore(dynamodb_backend)
        token = await store.acquire_lock("default")
        head = await store.read("default")
        with pytest.raises(VersionConflictError):
            await dynamodb_backend.write_snapshot(
                StateSnapshot("default", 7, head.lineage, "t"),
                lock_id=token.lock_id,
                expected_serial=6,
            )

    async def test_delete_workspace_with_long_history(self, dynamodb_backend):
        """Deletion pages through more items than one batch write holds."""
        store = StateStore(dynamodb_backend)
        await store.create_workspace("big")
        async with store.lock("big") as token:
            for i in range(30):
                instance = ResourceInstance(RG1, f"x{i}")
                expected = None if i == 0 else i
                await store.commit("big", token, [StateMutation.put(instance, expected)])
            await store.commit("big", token, [StateMutation.remove(RG1, 30)])
        await store.delete_workspace("big")
        assert "big" not in await store.list_workspaces()

    async def test_delete_missing_workspace(self, dynamodb_backend):
        with pytest.raises(WorkspaceNotFoundError):
            await dynamodb_backend.delete_workspace("missing", lock_id="x", expected_serial=0)

    async def test_delete_table(self, dynamodb_backend):
        await dynamodb_backend.delete_table()
        await dynamodb_backend.delete_table()


class TestSchema:
    """Tests for DynamoDB key builders."""

    def test_snapshot_keys_sort_by_serial(self):
        keys = [schema.sk_snapshot(s) for s in (10, 2, 100)]
        assert sorted(keys) == [schema.sk_snapshot(s) for s in (2, 10, 100)]

    def test_parse_round_trip(self):
        assert schema.parse_workspace_pk(schema.pk_workspace("ws-1")) == "ws-1"
        assert schema.parse_snapshot_sk(schema.sk_snapshot(42)) == 42

    def test_parse_rejects_other_keys(self):
        with pytest.raises(ValueError):
            schema.parse_workspace_pk("ENTITY#x")
        with pytest.raises(ValueError):
            schema.parse_snapshot_sk(schema.SK_META)

    def test_table_definition(self):
        definition = schema.get_table_definition("t")
        assert definition["TableName"] == "t"
        assert definition["GlobalSecondaryIndexes"][0]["IndexName"] == schema.GSI1_NAME
