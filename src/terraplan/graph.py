"""Resource graph construction.

Turns declarations (already parsed by the configuration layer) into a
validated, acyclic :class:`ResourceGraph`:

1. ``count`` / ``for_each`` declarations expand into one node per key.
2. ``${var.*}``, ``${count.index}`` and ``${each.*}`` are substituted.
3. Resource references become explicit edges, checked against the nodes
   and attributes that actually exist.
4. Cycles are rejected with the members of the cycle named.

The resulting graph is an arena: nodes are stored in address order and edges
are integer indices into that arena, so a graph can be shared freely between
concurrent readers.
"""

import heapq
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .exceptions import (
    CyclicDependencyError,
    DuplicateAddressError,
    InvalidIndexKeyError,
    UnresolvedReferenceError,
    ValidationError,
)
from .expressions import (
    EXPRESSION_TYPES,
    IterationRef,
    Reference,
    SplatReference,
    VariableRef,
    lookup_path,
    parse_value,
    references,
    sort_index_keys,
    substitute,
)
from .models import IndexKey, ResourceAddress, ResourceNode
from .providers import SchemaSource, schema_lookup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lifecycle:
    """Lifecycle meta-arguments of a declaration."""

    prevent_destroy: bool = False
    create_before_destroy: bool = False
    ignore_changes: frozenset[str] = frozenset()

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Lifecycle":
        ignore = d.get("ignore_changes", ())
        if ignore == "all":
            ignore_set = frozenset({"*"})
        elif isinstance(ignore, str):
            raise ValidationError("ignore_changes", ignore, "expected a list of names or 'all'")
        else:
            ignore_set = frozenset(ignore)
        return cls(
            prevent_destroy=bool(d.get("prevent_destroy", False)),
            create_before_destroy=bool(d.get("create_before_destroy", False)),
            ignore_changes=ignore_set,
        )


@dataclass(frozen=True)
class Declaration:
    """
    One declared resource block, before expansion.

    Attribute values may be literals, nested lists/dicts, interpolation
    strings (``"${azurerm_resource_group.rg.name}"``) or expression objects.
    ``count`` and ``for_each`` are mutually exclusive and may themselves be
    ``"${var.NAME}"`` strings.
    """

    type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    count: Any = None
    for_each: Any = None
    depends_on: tuple[str, ...] = ()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    provider: str | None = None

    def __post_init__(self) -> None:
        # Validates type and name through the address parser
        ResourceAddress.parse(f"{self.type}.{self.name}")
        if self.count is not None and self.for_each is not None:
            raise ValidationError(
                "declaration", self.resource, "count and for_each are mutually exclusive"
            )

    @property
    def resource(self) -> str:
        return f"{self.type}.{self.name}"

    @property
    def expanded(self) -> bool:
        """True if this declaration expands into indexed instances."""
        return self.count is not None or self.for_each is not None


class ResourceGraph:
    """
    Validated, acyclic graph of resource nodes.

    Constructing a graph checks that every ``depends_on`` edge points at a
    node in the graph and that there is no cycle.

    Raises:
        DuplicateAddressError: If two nodes share an address
        UnresolvedReferenceError: If an edge points outside the graph
        CyclicDependencyError: If the edges form a cycle
    """

    def __init__(self, nodes: Iterable[ResourceNode]) -> None:
        ordered = sorted(nodes, key=lambda n: str(n.address))
        self._nodes: tuple[ResourceNode, ...] = tuple(ordered)
        self._index: dict[ResourceAddress, int] = {}
        for i, node in enumerate(self._nodes):
            if node.address in self._index:
                raise DuplicateAddressError(node.address)
            self._index[node.address] = i

        upstream: list[tuple[int, ...]] = []
        downstream: list[list[int]] = [[] for _ in self._nodes]
        for i, node in enumerate(self._nodes):
            edges = []
            for dep in node.depends_on:
                j = self._index.get(dep)
                if j is None:
                    raise UnresolvedReferenceError(
                        str(node.address), str(dep), "dependency is not in the graph"
                    )
                edges.append(j)
                downstream[j].append(i)
            upstream.append(tuple(sorted(edges)))
        self._upstream: tuple[tuple[int, ...], ...] = tuple(upstream)
        self._downstream: tuple[tuple[int, ...], ...] = tuple(tuple(sorted(d)) for d in downstream)

        cycle = self.find_cycle()
        if cycle is not None:
            raise CyclicDependencyError(cycle)

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes)

    def __contains__(self, address: object) -> bool:
        return address in self._index

    @property
    def addresses(self) -> list[ResourceAddress]:
        """All addresses, in textual order."""
        return [n.address for n in self._nodes]

    def get(self, address: ResourceAddress) -> ResourceNode | None:
        i = self._index.get(address)
        return self._nodes[i] if i is not None else None

    def node(self, address: ResourceAddress) -> ResourceNode:
        """Return the node at ``address``; raises KeyError if absent."""
        return self._nodes[self._index[address]]

    def upstream(self, address: ResourceAddress) -> list[ResourceAddress]:
        """Addresses ``address`` depends on."""
        return [self._nodes[j].address for j in self._upstream[self._index[address]]]

    def downstream(self, address: ResourceAddress) -> list[ResourceAddress]:
        """Addresses that depend on ``address``."""
        return [self._nodes[j].address for j in self._downstream[self._index[address]]]

    def instances_of(self, type_name: str, name: str) -> list[ResourceAddress]:
        """Every expanded address of ``type_name.name``, ordered by key."""
        keys = [a.key for a in self._index if a.type == type_name and a.name == name]
        return [ResourceAddress(type_name, name, k) for k in sort_index_keys(keys)]

    def topological_order(self) -> list[ResourceAddress]:
        """
        Dependencies first; independent nodes ordered by address text.

        Deterministic for a given graph.
        """
        remaining = [len(up) for up in self._upstream]
        ready = [i for i, count in enumerate(remaining) if count == 0]
        heapq.heapify(ready)
        order: list[ResourceAddress] = []
        while ready:
            i = heapq.heappop(ready)
            order.append(self._nodes[i].address)
            for j in self._downstream[i]:
                remaining[j] -= 1
                if remaining[j] == 0:
                    heapq.heappush(ready, j)
        return order

    def find_cycle(self) -> list[ResourceAddress] | None:
        """
        Depth-first search with an explicit recursion stack.

        Returns:
            The cycle as a list of addresses (first repeated at the end),
            or None if the graph is acyclic.
        """
        white, grey, black = 0, 1, 2
        color = [white] * len(self._nodes)
        for start in range(len(self._nodes)):
            if color[start] != white:
                continue
            color[start] = grey
            path = [start]
            stack: list[tuple[int, Iterator[int]]] = [(start, iter(self._upstream[start]))]
            while stack:
                current, edges = stack[-1]
                nxt = next(edges, None)
                if nxt is None:
                    color[current] = black
                    stack.pop()
                    path.pop()
                elif color[nxt] == grey:
                    members = path[path.index(nxt) :] + [nxt]
                    return [self._nodes[i].address for i in members]
                elif color[nxt] == white:
                    color[nxt] = grey
                    path.append(nxt)
                    stack.append((nxt, iter(self._upstream[nxt])))
        return None


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def _expansion(
    decl: Declaration,
    variables: Mapping[str, Any],
) -> list[tuple[IndexKey | None, Any]]:
    """Return (key, each.value) pairs for a declaration."""
    resolve = _variable_resolver(decl.resource, variables, None, None, None)

    if decl.count is not None:
        count = substitute(parse_value(decl.count), resolve)
        if isinstance(count, bool) or not isinstance(count, int):
            raise InvalidIndexKeyError(decl.resource, count, "count must be an integer")
        if count < 0:
            raise InvalidIndexKeyError(decl.resource, count, "count must be >= 0")
        return [(i, None) for i in range(count)]

    if decl.for_each is not None:
        for_each = substitute(parse_value(decl.for_each), resolve)
        pairs: list[tuple[IndexKey | None, Any]] = []
        if isinstance(for_each, Mapping):
            items = list(for_each.items())
        elif isinstance(for_each, (list, tuple, set, frozenset)):
            items = [(k, k) for k in for_each]
        else:
            raise InvalidIndexKeyError(
                decl.resource, for_each, "for_each must be a mapping or a set of strings"
            )
        seen: set[str] = set()
        for key, value in items:
            if not isinstance(key, str):
                raise InvalidIndexKeyError(decl.resource, key, "for_each keys must be strings")
            if key in seen:
                raise InvalidIndexKeyError(decl.resource, key, "duplicate for_each key")
            seen.add(key)
            pairs.append((key, value))
        return sorted(pairs, key=lambda p: p[0])

    return [(None, None)]


def _variable_resolver(
    source: str,
    variables: Mapping[str, Any],
    count_index: int | None,
    each_key: str | None,
    each_value: Any,
) -> Callable[[VariableRef | IterationRef], Any]:
    def resolve(ref: VariableRef | IterationRef) -> Any:
        if isinstance(ref, VariableRef):
            if ref.name not in variables:
                raise UnresolvedReferenceError(source, str(ref), "variable is not set")
            try:
                return lookup_path(variables[ref.name], ref.path)
            except LookupError:
                raise UnresolvedReferenceError(source, str(ref), "no such variable path") from None
        if ref.kind == "count.index":
            if count_index is None:
                raise UnresolvedReferenceError(source, str(ref), "resource has no count")
            return count_index
        if each_key is None:
            raise UnresolvedReferenceError(source, str(ref), "resource has no for_each")
        if ref.kind == "each.key":
            return each_key
        try:
            return lookup_path(each_value, ref.path)
        except LookupError:
            raise UnresolvedReferenceError(source, str(ref), "no such each.value path") from None

    return resolve


def build_graph(
    declarations: Iterable[Declaration],
    variables: Mapping[str, Any] | None = None,
    *,
    schemas: SchemaSource = None,
    tainted: Iterable[ResourceAddress | str] = (),
) -> ResourceGraph:
    """
    Build a validated resource graph.

    Args:
        declarations: Parsed resource declarations
        variables: Input variable values (precedence already resolved)
        schemas: Resource schemas, used to accept references to computed attributes
        tainted: Addresses to mark tainted (forces replacement on the next plan)

    Returns:
        An acyclic ResourceGraph

    Raises:
        ConfigError: On duplicate addresses, invalid index keys, unresolved
            references or dependency cycles
    """
    variables = variables or {}
    lookup = schema_lookup(schemas)

    by_resource: dict[tuple[str, str], Declaration] = {}
    for decl in declarations:
        key = (decl.type, decl.name)
        if key in by_resource:
            raise DuplicateAddressError(ResourceAddress(decl.type, decl.name))
        by_resource[key] = decl

    # Pass 1: expand and substitute
    expanded: dict[ResourceAddress, tuple[Declaration, dict[str, Any]]] = {}
    for decl in by_resource.values():
        for key, each_value in _expansion(decl, variables):
            address = ResourceAddress(decl.type, decl.name, key)
            if address in expanded:
                raise DuplicateAddressError(address)
            resolve = _variable_resolver(
                str(address),
                variables,
                key if decl.count is not None else None,
                key if decl.for_each is not None else None,
                each_value,
            )
            attributes = substitute(parse_value(dict(decl.attributes)), resolve)
            expanded[address] = (decl, attributes)

    # Pass 2: references become edges
    def check_attribute(source: str, ref: Reference | SplatReference, target: Declaration) -> None:
        attribute = ref.attribute
        if attribute == "id" or attribute in target.attributes:
            return
        schema = lookup(target.type)
        if schema is not None and attribute in schema.computed:
            return
        raise UnresolvedReferenceError(
            source, str(ref), f"{target.resource} has no attribute '{attribute}'"
        )

    marked = {ResourceAddress.coerce(a) for a in tainted}
    for address in marked:
        if address not in expanded:
            raise UnresolvedReferenceError("tainted", str(address), "no such resource")

    nodes: list[ResourceNode] = []
    for address, (decl, attributes) in expanded.items():
        source = str(address)
        edges: set[ResourceAddress] = set()
        for ref in references(attributes):
            target = by_resource.get((ref.type, ref.name))
            if target is None:
                raise UnresolvedReferenceError(source, str(ref), "no such resource")
            check_attribute(source, ref, target)
            if isinstance(ref, SplatReference):
                edges.update(a for a in expanded if a.type == ref.type and a.name == ref.name)
                continue
            if isinstance(ref.key, EXPRESSION_TYPES):
                raise UnresolvedReferenceError(source, str(ref), "index did not resolve")
            if ref.key is None and target.expanded:
                raise UnresolvedReferenceError(
                    source, str(ref), f"{target.resource} uses count/for_each; add an index or [*]"
                )
            if ref.target not in expanded:
                raise UnresolvedReferenceError(source, str(ref), "no such resource instance")
            edges.add(ref.target)

        for dep in decl.depends_on:
            dep_address = ResourceAddress.coerce(dep)
            matched = [
                a
                for a in expanded
                if a == dep_address
                or (dep_address.key is None and a.base == dep_address)
            ]
            if not matched and (dep_address.type, dep_address.name) not in by_resource:
                raise UnresolvedReferenceError(source, dep, "depends_on target does not exist")
            if not matched and dep_address.key is not None:
                raise UnresolvedReferenceError(source, dep, "no such resource instance")
            edges.update(matched)

        nodes.append(
            ResourceNode(
                address=address,
                attributes=attributes,
                depends_on=frozenset(edges),
                prevent_destroy=decl.lifecycle.prevent_destroy,
                create_before_destroy=decl.lifecycle.create_before_destroy,
                ignore_changes=decl.lifecycle.ignore_changes,
                tainted=address in marked,
                provider=decl.provider,
            )
        )

    graph = ResourceGraph(nodes)
    logger.debug("Built graph with %d node(s) from %d declaration(s)", len(graph), len(by_resource))
    return graph
