"""Tests for the plan engine."""

import pytest

from terraplan import (
    UNKNOWN,
    Action,
    MalformedEntryError,
    Manifest,
    PreventDestroyViolation,
    ResourceAddress,
    ResourceInstance,
    StateSnapshot,
    compute_plan,
)
from tests.fixtures.configs import RG, SCHEMAS, VNET, demo_config

RG1 = ResourceAddress(RG, "rg1")
NET1 = ResourceAddress(VNET, "net1")


def graph_for(config=None, variables=None, tainted=()):
    manifest = Manifest.from_dict(config or demo_config())
    return manifest.build_graph(variables, schemas=SCHEMAS, tainted=tainted)


def snapshot_of(*instances, serial=2):
    return StateSnapshot("default", serial, "LINEAGE", "2026-01-01T00:00:00+00:00", instances)


def rg1(**changes):
    instance = ResourceInstance(
        RG1,
        "/rg/1",
        {"id": "/rg/1", "name": "rg-demo", "location": "westeurope"},
        version=1,
    )
    return instance.with_changes(**changes)


def net1(**changes):
    instance = ResourceInstance(
        NET1,
        "/vnet/2",
        {
            "id": "/vnet/2",
            "guid": "guid-1",
            "name": "vnet-demo",
            "location": "westeurope",
            "resource_group_name": "rg-demo",
            "address_space": ["10.0.0.0/16"],
        },
        version=2,
        dependencies=frozenset({RG1}),
    )
    return instance.with_changes(**changes)


class TestComputePlan:
    """Tests for plan computation."""

    def test_empty_state_creates_in_dependency_order(self):
        """First plan creates everything, dependencies first."""
        change_set = compute_plan(graph_for(), snapshot_of(serial=0), schemas=SCHEMAS)

        assert change_set.actions() == [(str(RG1), Action.CREATE), (str(NET1), Action.CREATE)]
        entry = change_set.get(NET1)
        assert entry.depends_on == frozenset({RG1})
        assert entry.expected_version is None
        diffs = {d.name: d.after for d in entry.diffs}
        assert diffs["location"] == "westeurope"
        assert diffs["resource_group_name"] == "rg-demo"

    def test_create_of_computed_reference_is_unknown(self):
        config = demo_config(tags={"rg": "${azurerm_resource_group.rg1.id}"})
        change_set = compute_plan(graph_for(config), snapshot_of(serial=0), schemas=SCHEMAS)
        diff = {d.name: d for d in change_set.get(NET1).diffs}["tags"]
        assert diff.after == {"rg": UNKNOWN}
        assert not diff.known

    def test_matching_state_is_all_noop(self):
        change_set = compute_plan(graph_for(), snapshot_of(rg1(), net1()), schemas=SCHEMAS)

        assert [e.action for e in change_set] == [Action.NOOP, Action.NOOP]
        assert not change_set.has_changes
        assert all(e.reason == "" for e in change_set)

    def test_changed_attribute_updates(self):
        change_set = compute_plan(
            graph_for(demo_config(name="vnet-renamed")),
            snapshot_of(rg1(), net1()),
            schemas=SCHEMAS,
        )
        entry = change_set.get(NET1)
        assert entry.action is Action.UPDATE
        assert [(d.name, d.before, d.after) for d in entry.diffs] == [
            ("name", "vnet-demo", "vnet-renamed")
        ]
        assert entry.expected_version == 2
        assert change_set.get(RG1).action is Action.NOOP

    def test_update_propagates_to_references(self):
        """A planned update of rg1.name flows into net1 before apply."""
        config = demo_config()
        config["resource"][RG]["rg1"]["name"] = "rg-renamed"
        change_set = compute_plan(graph_for(config), snapshot_of(rg1(), net1()), schemas=SCHEMAS)
        assert change_set.get(RG1).action is Action.UPDATE
        diffs = {d.name: d.after for d in change_set.get(NET1).diffs}
        assert diffs == {"resource_group_name": "rg-renamed"}

    def test_force_new_replaces_and_cascades(self):
        change_set = compute_plan(
            graph_for(variables={"location": "northeurope"}),
            snapshot_of(rg1(), net1()),
            schemas=SCHEMAS,
        )
        rg_entry = change_set.get(RG1)
        assert rg_entry.action is Action.REPLACE
        assert rg_entry.reason == "forces replacement: location"
        assert rg_entry.diffs[0].forces_replacement
        assert change_set.get(NET1).action is Action.REPLACE

    def test_tainted_in_state_replaces(self):
        change_set = compute_plan(
            graph_for(), snapshot_of(rg1(tainted=True), net1()), schemas=SCHEMAS
        )
        entry = change_set.get(RG1)
        assert entry.action is Action.REPLACE
        assert entry.reason == "tainted"

    def test_tainted_in_graph_replaces(self):
        change_set = compute_plan(
            graph_for(tainted=[str(NET1)]), snapshot_of(rg1(), net1()), schemas=SCHEMAS
        )
        assert change_set.get(NET1).action is Action.REPLACE
        assert change_set.get(RG1).action is Action.NOOP

    def test_ignore_changes(self):
        config = demo_config(lifecycle={"ignore_changes": ["name"]}, name="vnet-renamed")
        snapshot = snapshot_of(rg1(), net1())
        change_set = compute_plan(graph_for(config), snapshot, schemas=SCHEMAS)
        assert change_set.get(NET1).action is Action.NOOP

    def test_ignore_all_changes(self):
        config = demo_config(lifecycle={"ignore_changes": "all"}, name="vnet-renamed")
        change_set = compute_plan(graph_for(config), snapshot_of(rg1(), net1()), schemas=SCHEMAS)
        assert change_set.get(NET1).action is Action.NOOP

    def test_lifecycle_change_is_noop_with_reason(self):
        config = demo_config(lifecycle={"prevent_destroy": True})
        change_set = compute_plan(graph_for(config), snapshot_of(rg1(), net1()), schemas=SCHEMAS)
        entry = change_set.get(NET1)
        assert entry.action is Action.NOOP
        assert entry.reason == "lifecycle"
        assert not change_set.has_changes

    def test_deposed_objects_update(self):
        snapshot = snapshot_of(rg1(deposed=("/rg/old",)), net1())
        entry = compute_plan(graph_for(), snapshot, schemas=SCHEMAS).get(RG1)
        assert entry.action is Action.UPDATE
        assert entry.reason == "deposed"
        assert entry.diffs == ()

    def test_orphan_is_deleted_after_dependents(self):
        """An instance no longer configured is deleted once its dependents are handled."""
        orphan = ResourceInstance(ResourceAddress(RG, "old"), "/rg/9", {"name": "old"}, version=1)
        dependent = net1(dependencies=frozenset({RG1, orphan.address}))
        change_set = compute_plan(
            graph_for(), snapshot_of(rg1(), dependent, orphan), schemas=SCHEMAS
        )
        entry = change_set.get(orphan.address)
        assert entry.action is Action.DELETE
        assert entry.reason == "not in configuration"
        assert NET1 in entry.depends_on
        order = [a for a, _ in change_set.actions()]
        assert order.index(str(NET1)) < order.index(str(orphan.address))

    def test_destroy_deletes_in_reverse_order(self):
        change_set = compute_plan(
            graph_for(), snapshot_of(rg1(), net1()), schemas=SCHEMAS, destroy=True
        )
        assert change_set.destroy
        assert change_set.actions() == [(str(NET1), Action.DELETE), (str(RG1), Action.DELETE)]
        assert change_set.get(RG1).reason == "destroy"

    def test_prevent_destroy_blocks_replace(self):
        config = demo_config()
        config["resource"][RG]["rg1"]["lifecycle"] = {"prevent_destroy": True}
        with pytest.raises(PreventDestroyViolation) as exc_info:
            compute_plan(
                graph_for(config, {"location": "northeurope"}),
                snapshot_of(rg1(prevent_destroy=True), net1()),
                schemas=SCHEMAS,
            )
        assert exc_info.value.addresses == [RG1]

    def test_prevent_destroy_lists_every_violation(self):
        """Orphans keep the flag they were applied with."""
        orphan = ResourceInstance(
            ResourceAddress(RG, "old"), "/rg/9", {"name": "old"}, version=1, prevent_destroy=True
        )
        config = demo_config()
        config["resource"][RG]["rg1"]["lifecycle"] = {"prevent_destroy": True}
        with pytest.raises(PreventDestroyViolation) as exc_info:
            compute_plan(
                graph_for(config),
                snapshot_of(rg1(prevent_destroy=True), net1(), orphan),
                schemas=SCHEMAS,
                destroy=True,
            )
        assert exc_info.value.addresses == [ResourceAddress(RG, "old"), RG1]

    def test_refreshed_view_recreates_missing_object(self):
        """Objects deleted out-of-band are re-created, versions come from stored state."""
        stored = snapshot_of(rg1(), net1())
        refreshed = stored.with_instances([rg1()])
        change_set = compute_plan(graph_for(), refreshed, schemas=SCHEMAS, base=stored)
        entry = change_set.get(NET1)
        assert entry.action is Action.CREATE
        assert entry.reason == "deleted outside of terraplan"
        assert entry.expected_version == 2

    def test_vanished_orphan_is_state_only_delete(self):
        orphan = ResourceInstance(ResourceAddress(RG, "old"), "/rg/9", {}, version=1)
        stored = snapshot_of(rg1(), net1(), orphan)
        refreshed = stored.with_instances([rg1(), net1()])
        entry = compute_plan(graph_for(), refreshed, schemas=SCHEMAS, base=stored).get(
            orphan.address
        )
        assert entry.action is Action.DELETE
        assert entry.state_only
        assert entry.reason == "vanished"

    def test_plan_is_deterministic(self):
        snapshot = snapshot_of(rg1(), net1())
        graph = graph_for(demo_config(name="other"))
        first = compute_plan(graph, snapshot, schemas=SCHEMAS)
        second = compute_plan(graph, snapshot, schemas=SCHEMAS)
        assert first.entries == second.entries

    def test_change_set_metadata(self):
        change_set = compute_plan(graph_for(), snapshot_of(serial=0), schemas=SCHEMAS)
        assert change_set.workspace == "default"
        assert change_set.base_serial == 0
        assert change_set.lineage == "LINEAGE"
        assert change_set.summary()["create"] == 2
        assert len(change_set) == 2
        assert str(change_set.get(RG1)) == f"create {RG1}"

    def test_entry_accessors(self):
        change_set = compute_plan(graph_for(), snapshot_of(rg1(), serial=1), schemas=SCHEMAS)
        create = change_set.get(NET1)
        assert create.desired_node().address == NET1
        with pytest.raises(MalformedEntryError) as exc_info:
            create.stored_instance()
        assert exc_info.value.missing == "prior"
        assert change_set.get(RG1).stored_instance() == rg1()
