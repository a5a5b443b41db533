"""Tests for refresh and planning against the state store."""

import pytest

from terraplan import (
    Action,
    Planner,
    ProviderRegistry,
    ResourceAddress,
    ResourceInstance,
    StateMutation,
)
from tests.fixtures.configs import RG, VNET, demo_config
from tests.fixtures.providers import ProviderFailure

RG1 = ResourceAddress(RG, "rg1")
NET1 = ResourceAddress(VNET, "net1")


async def track(store, provider, address, attributes, dependencies=frozenset()):
    """Create an object in the provider and record it in state."""
    external_id, result = await provider.create(address.type, attributes)
    instance = ResourceInstance(
        address, external_id, {**attributes, **result}, dependencies=dependencies
    )
    async with store.lock("default") as token:
        return await store.commit("default", token, [StateMutation.put(instance, None)])


class TestRefresh:
    """Tests for Planner.refresh."""

    async def test_reads_current_attributes(self, memory_store, registry, provider):
        head = await track(memory_store, provider, RG1, {"name": "rg-demo"})
        external_id = head.get(RG1).external_id
        provider.objects[external_id][1]["name"] = "changed-outside"

        refreshed = await Planner(memory_store, registry).refresh(head)
        assert refreshed.get(RG1).attributes["name"] == "changed-outside"
        assert refreshed.get(RG1).version == head.get(RG1).version
        assert refreshed.serial == head.serial

    async def test_drops_missing_objects(self, memory_store, registry, provider):
        head = await track(memory_store, provider, RG1, {"name": "rg-demo"})
        provider.objects.clear()
        refreshed = await Planner(memory_store, registry).refresh(head)
        assert RG1 not in refreshed
        # Stored state is untouched
        assert RG1 in await memory_store.read("default")

    async def test_read_errors_propagate(self, memory_store, registry, provider):
        head = await track(memory_store, provider, RG1, {"name": "rg-demo"})
        provider.fail("read", head.get(RG1).external_id)
        with pytest.raises(ProviderFailure):
            await Planner(memory_store, registry).refresh(head)

    async def test_unregistered_provider_keeps_stored_attributes(
        self, memory_store, provider
    ):
        head = await track(memory_store, provider, RG1, {"name": "rg-demo"})
        refreshed = await Planner(memory_store, ProviderRegistry()).refresh(head)
        assert refreshed.get(RG1) == head.get(RG1)
        assert provider.ops("read") == []

    async def test_concurrency_limit(self, memory_store, registry, provider):
        for i in range(5):
            await track(memory_store, provider, ResourceAddress(RG, f"rg{i}"), {"name": f"{i}"})
        head = await memory_store.read("default")
        refreshed = await Planner(memory_store, registry, concurrency=2).refresh(head)
        assert len(refreshed) == 5


class TestPlan:
    """Tests for Planner.plan."""

    async def test_plan_sees_drift(self, engine, memory_store, registry, provider):
        planner = Planner(memory_store, registry)
        graph = engine.build_graph(demo_config())
        await track(memory_store, provider, RG1, {"name": "rg-demo", "location": "westeurope"})
        provider.objects["/azurerm_resource_group/1"][1]["name"] = "drifted"

        change_set = await planner.plan(graph, "default")
        entry = change_set.get(RG1)
        assert entry.action is Action.UPDATE
        assert [(d.name, d.before, d.after) for d in entry.diffs] == [
            ("name", "drifted", "rg-demo")
        ]

    async def test_plan_without_refresh_uses_stored_state(
        self, engine, memory_store, registry, provider
    ):
        planner = Planner(memory_store, registry, refresh=False)
        graph = engine.build_graph(demo_config())
        await track(memory_store, provider, RG1, {"name": "rg-demo", "location": "westeurope"})
        provider.objects.clear()

        change_set = await planner.plan(graph, "default")
        assert change_set.get(RG1).action is Action.NOOP
        assert provider.ops("read") == []

        change_set = await planner.plan(graph, "default", refresh=True)
        assert change_set.get(RG1).action is Action.CREATE

    async def test_plan_carries_stored_versions(self, engine, memory_store, registry, provider):
        graph = engine.build_graph(demo_config())
        head = await track(memory_store, provider, RG1, {"name": "rg-demo", "location": "x"})
        change_set = await Planner(memory_store, registry).plan(graph, "default")
        assert change_set.base_serial == head.serial
        assert change_set.lineage == head.lineage
        assert change_set.get(RG1).expected_version == head.get(RG1).version
