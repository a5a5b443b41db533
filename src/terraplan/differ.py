"""Plan engine.

Compares a :class:`~terraplan.graph.ResourceGraph` (desired state) with a
:class:`~terraplan.models.StateSnapshot` (last-known actual state) and
produces an ordered :class:`ChangeSet`.

Computing a plan is pure: nothing is read from or written to a store or a
provider, and identical inputs always give identical plans.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import (
    CyclicDependencyError,
    MalformedEntryError,
    PreventDestroyViolation,
    UnresolvedReferenceError,
)
from .expressions import (
    UNKNOWN,
    Reference,
    SplatReference,
    evaluate,
    is_unknown,
    lookup_path,
    sort_index_keys,
)
from .graph import ResourceGraph
from .models import ResourceAddress, ResourceInstance, ResourceNode, StateSnapshot
from .providers import SchemaSource, schema_lookup

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """What applying an entry does."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"
    NOOP = "no-op"


@dataclass(frozen=True)
class AttributeDiff:
    """One attribute that differs between stored and desired state."""

    name: str
    before: Any
    after: Any  # UNKNOWN when only known after apply
    forces_replacement: bool = False

    @property
    def known(self) -> bool:
        return not is_unknown(self.after)


@dataclass(frozen=True)
class ChangeSetEntry:
    """
    One planned action.

    Attributes:
        address: Target resource
        action: What to do
        diffs: Changed attributes, ordered by name (create/update/replace)
        depends_on: Entries that must reach a terminal state first
        node: Desired node (None for delete)
        prior: Stored instance (None for create)
        expected_version: Stored version this entry was planned against
        reason: Human-readable explanation
        state_only: Delete only the state record (object already gone)
    """

    address: ResourceAddress
    action: Action
    diffs: tuple[AttributeDiff, ...] = ()
    depends_on: frozenset[ResourceAddress] = frozenset()
    node: ResourceNode | None = None
    prior: ResourceInstance | None = None
    expected_version: int | None = None
    reason: str = ""
    state_only: bool = False

    @property
    def create_before_destroy(self) -> bool:
        if self.node is not None:
            return self.node.create_before_destroy
        return self.prior is not None and self.prior.create_before_destroy

    def desired_node(self) -> ResourceNode:
        """The desired node; raises MalformedEntryError if there is none."""
        if self.node is None:
            raise MalformedEntryError(self.address, "node")
        return self.node

    def stored_instance(self) -> ResourceInstance:
        """The stored instance; raises MalformedEntryError if there is none."""
        if self.prior is None:
            raise MalformedEntryError(self.address, "prior")
        return self.prior

    def __str__(self) -> str:
        text = f"{self.action.value} {self.address}"
        return f"{text} ({self.reason})" if self.reason else text


@dataclass(frozen=True)
class ChangeSet:
    """
    Ordered plan for one workspace.

    ``entries`` are in a topological order of ``depends_on``; independent
    entries are ordered by address text.
    """

    workspace: str
    base_serial: int
    lineage: str
    entries: tuple[ChangeSetEntry, ...] = ()
    destroy: bool = False
    _index: dict[ResourceAddress, ChangeSetEntry] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        self._index.update({e.address: e for e in self.entries})

    def __iter__(self) -> Iterator[ChangeSetEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, address: ResourceAddress) -> ChangeSetEntry | None:
        return self._index.get(address)

    @property
    def has_changes(self) -> bool:
        return any(e.action is not Action.NOOP for e in self.entries)

    def summary(self) -> dict[str, int]:
        """Count of entries per action."""
        counts = {action.value: 0 for action in Action}
        for entry in self.entries:
            counts[entry.action.value] += 1
        return counts

    def actions(self) -> list[tuple[str, Action]]:
        """``(address text, action)`` pairs in plan order."""
        return [(str(e.address), e.action) for e in self.entries]


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class _Planner:
    """Single-use state for one compute_plan call."""

    def __init__(
        self,
        graph: ResourceGraph,
        snapshot: StateSnapshot,
        base: StateSnapshot,
        schemas: SchemaSource,
    ) -> None:
        self.graph = graph
        self.snapshot = snapshot
        self.base = base
        self.schema = schema_lookup(schemas)
        self.decisions: dict[ResourceAddress, Action] = {}
        self.desired: dict[ResourceAddress, dict[str, Any]] = {}
        self.entries: dict[ResourceAddress, ChangeSetEntry] = {}
        self.violations: list[ResourceAddress] = []

    def expected_version(self, address: ResourceAddress) -> int | None:
        stored = self.base.get(address)
        return stored.version if stored is not None else None

    def planned_value(self, source: ResourceAddress, ref: Reference) -> Any:
        target = ref.target
        attribute = ref.attribute
        action = self.decisions[target]
        prior = self.snapshot.get(target)
        configured = self.desired[target]

        if prior is not None and (action is Action.NOOP or action is Action.UPDATE):
            if attribute == "id":
                value = prior.external_id
            elif action is Action.UPDATE and attribute in configured:
                value = configured[attribute]
            elif attribute in prior.attributes:
                value = prior.attributes[attribute]
            else:
                value = configured.get(attribute, UNKNOWN)
        else:
            value = UNKNOWN if attribute == "id" else configured.get(attribute, UNKNOWN)

        try:
            return lookup_path(value, ref.path[1:])
        except LookupError:
            raise UnresolvedReferenceError(
                str(source), str(ref), "no such attribute path"
            ) from None

    def evaluate_node(self, node: ResourceNode) -> dict[str, Any]:
        def resolve_reference(ref: Reference) -> Any:
            return self.planned_value(node.address, ref)

        def resolve_splat(ref: SplatReference) -> Any:
            return [
                self.planned_value(node.address, Reference(ref.type, ref.name, a.key, ref.path))
                for a in self.graph.instances_of(ref.type, ref.name)
            ]

        desired: dict[str, Any] = evaluate(node.attributes, resolve_reference, resolve_splat)
        return desired

    def diff(
        self,
        node: ResourceNode,
        desired: dict[str, Any],
        prior: ResourceInstance,
    ) -> list[AttributeDiff]:
        schema = self.schema(node.type)
        diffs = []
        for name in sorted(desired):
            if node.ignores(name):
                continue
            before = prior.attributes.get(name)
            after = desired[name]
            if is_unknown(after) or after != before:
                forces = schema is not None and schema.forces_replacement(name)
                if is_unknown(after):
                    after = UNKNOWN
                diffs.append(AttributeDiff(name, before, after, forces))
        return diffs

    def plan_node(self, node: ResourceNode) -> None:
        address = node.address
        prior = self.snapshot.get(address)
        desired = self.evaluate_node(node)
        self.desired[address] = desired
        depends_on = frozenset(self.graph.upstream(address))
        expected = self.expected_version(address)

        if prior is None:
            diffs = tuple(AttributeDiff(n, None, v) for n, v in sorted(desired.items()))
            reason = "deleted outside of terraplan" if address in self.base else ""
            action, entry_diffs = Action.CREATE, diffs
        else:
            diffs_list = self.diff(node, desired, prior)
            forcing = [d.name for d in diffs_list if d.forces_replacement]
            entry_diffs = tuple(diffs_list)
            if node.tainted or prior.tainted:
                action, reason = Action.REPLACE, "tainted"
            elif forcing:
                action, reason = Action.REPLACE, f"forces replacement: {', '.join(forcing)}"
            elif diffs_list:
                action, reason = Action.UPDATE, ""
            elif prior.deposed:
                action, reason = Action.UPDATE, "deposed"
            else:
                action, reason = Action.NOOP, ""
                if (
                    prior.prevent_destroy != node.prevent_destroy
                    or prior.create_before_destroy != node.create_before_destroy
                    or prior.dependencies != node.depends_on
                ):
                    reason = "lifecycle"
            if action is Action.REPLACE and node.prevent_destroy:
                self.violations.append(address)

        self.decisions[address] = action
        self.entries[address] = ChangeSetEntry(
            address=address,
            action=action,
            diffs=entry_diffs,
            depends_on=depends_on,
            node=node,
            prior=prior,
            expected_version=expected,
            reason=reason,
        )

    def plan_delete(self, prior: ResourceInstance, *, state_only: bool = False) -> None:
        address = prior.address
        node = self.graph.get(address)
        protected = node.prevent_destroy if node is not None else prior.prevent_destroy
        if protected:
            self.violations.append(address)
        if state_only:
            reason = "vanished"
        else:
            reason = "destroy" if node is not None else "not in configuration"
        self.decisions[address] = Action.DELETE
        self.entries[address] = ChangeSetEntry(
            address=address,
            action=Action.DELETE,
            prior=prior,
            expected_version=self.expected_version(address),
            reason=reason,
            state_only=state_only,
        )

    def link_deletes(self) -> None:
        """A delete waits for every entry whose stored instance depended on it."""
        extra: dict[ResourceAddress, set[ResourceAddress]] = {}
        for entry in self.entries.values():
            prior = entry.prior
            if prior is None:
                continue
            for dep in prior.dependencies:
                target = self.entries.get(dep)
                if target is not None and target.action is Action.DELETE and dep != entry.address:
                    extra.setdefault(dep, set()).add(entry.address)
        for address, dependents in extra.items():
            entry = self.entries[address]
            self.entries[address] = ChangeSetEntry(
                address=entry.address,
                action=entry.action,
                diffs=entry.diffs,
                depends_on=entry.depends_on | dependents,
                node=entry.node,
                prior=entry.prior,
                expected_version=entry.expected_version,
                reason=entry.reason,
                state_only=entry.state_only,
            )

    def ordered(self) -> list[ChangeSetEntry]:
        addresses = sorted(self.entries, key=str)
        position = {a: i for i, a in enumerate(addresses)}
        remaining = [0] * len(addresses)
        dependents: list[list[int]] = [[] for _ in addresses]
        for i, address in enumerate(addresses):
            for dep in self.entries[address].depends_on:
                j = position.get(dep)
                if j is not None:
                    remaining[i] += 1
                    dependents[j].append(i)

        ready = [i for i, count in enumerate(remaining) if count == 0]
        heapq.heapify(ready)
        order: list[ChangeSetEntry] = []
        while ready:
            i = heapq.heappop(ready)
            order.append(self.entries[addresses[i]])
            for j in dependents[i]:
                remaining[j] -= 1
                if remaining[j] == 0:
                    heapq.heappush(ready, j)
        if len(order) != len(addresses):
            stuck = [addresses[i] for i, count in enumerate(remaining) if count > 0]
            raise CyclicDependencyError(stuck + stuck[:1])
        return order


def compute_plan(
    graph: ResourceGraph,
    snapshot: StateSnapshot,
    *,
    schemas: SchemaSource = None,
    destroy: bool = False,
    base: StateSnapshot | None = None,
) -> ChangeSet:
    """Compute the ordered change-set that moves ``snapshot`` to ``graph``.

    Args:
        graph: Desired state
        snapshot: Actual state (stored, or refreshed from providers)
        schemas: Resource schemas (force-new attributes)
        destroy: Plan deletion of every stored instance instead
        base: Stored snapshot when ``snapshot`` is a refreshed view of it;
              expected versions are taken from here

    Returns:
        The ChangeSet

    Raises:
        PreventDestroyViolation: If any delete or replace hits a protected
            resource; lists all of them, and no ChangeSet is produced
    """
    base = base if base is not None else snapshot
    planner = _Planner(graph, snapshot, base, schemas)

    if destroy:
        for instance in snapshot:
            planner.plan_delete(instance)
    else:
        for address in graph.topological_order():
            planner.plan_node(graph.node(address))
        for instance in snapshot:
            if instance.address not in graph:
                planner.plan_delete(instance)
    for instance in base:
        if instance.address not in snapshot and (destroy or instance.address not in graph):
            planner.plan_delete(instance, state_only=True)

    if planner.violations:
        raise PreventDestroyViolation(planner.violations)

    planner.link_deletes()
    change_set = ChangeSet(
        workspace=base.workspace,
        base_serial=base.serial,
        lineage=base.lineage,
        entries=tuple(planner.ordered()),
        destroy=destroy,
    )
    logger.debug("Computed plan for workspace %s: %s", base.workspace, change_set.summary())
    return change_set


def stored_instances_of(
    snapshot: StateSnapshot, type_name: str, name: str
) -> list[ResourceAddress]:
    """Stored addresses of ``type_name.name``, ordered by key."""
    keys = [
        i.address.key for i in snapshot if i.address.type == type_name and i.address.name == name
    ]
    return [ResourceAddress(type_name, name, k) for k in sort_index_keys(keys)]
