"""Core models for terraplan."""

import json
import re
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from functools import cached_property
from typing import Any

from .exceptions import ValidationError

IndexKey = int | str

# TYPE.NAME, TYPE.NAME[0] or TYPE.NAME["key"]
_ADDRESS_PATTERN = re.compile(
    r'^(?P<type>[A-Za-z_][A-Za-z0-9_-]*)\.(?P<name>[A-Za-z_][A-Za-z0-9_-]*)'
    r'(?:\[(?P<key>\d+|"(?:[^"\\]|\\.)*")\])?$'
)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


def validate_index_key(key: Any) -> IndexKey | None:
    """Return ``key`` if it is a valid index key, else raise ValueError."""
    if key is None:
        return None
    if isinstance(key, bool):
        raise ValueError("index key cannot be a boolean")
    if isinstance(key, int):
        if key < 0:
            raise ValueError("integer index key must be >= 0")
        return key
    if isinstance(key, str):
        return key
    raise ValueError(f"index key must be a string or integer, got {type(key).__name__}")


@dataclass(frozen=True)
class ResourceAddress:
    """
    Identity of a resource: type, local name and optional index key.

    The key is an ``int >= 0`` for ``count`` expansions and a ``str`` for
    ``for_each`` expansions. The textual form (``str(address)``) follows the
    familiar ``type.name[0]`` / ``type.name["key"]`` notation and is also
    the tie-break order for independent plan entries.
    """

    type: str
    name: str
    key: IndexKey | None = None

    def __post_init__(self) -> None:
        try:
            validate_index_key(self.key)
        except ValueError as e:
            raise ValidationError("index key", self.key, str(e)) from e

    def __str__(self) -> str:
        if self.key is None:
            return f"{self.type}.{self.name}"
        if isinstance(self.key, int):
            return f"{self.type}.{self.name}[{self.key}]"
        return f"{self.type}.{self.name}[{json.dumps(self.key)}]"

    @property
    def resource(self) -> str:
        """The ``type.name`` part, without the index key."""
        return f"{self.type}.{self.name}"

    @property
    def base(self) -> "ResourceAddress":
        """This address without its index key."""
        return ResourceAddress(self.type, self.name)

    def with_key(self, key: IndexKey | None) -> "ResourceAddress":
        """Return a copy of this address with a different index key."""
        return ResourceAddress(self.type, self.name, key)

    @classmethod
    def parse(cls, text: str) -> "ResourceAddress":
        """
        Parse an address from its textual form.

        Raises:
            ValidationError: If the text is not a valid address
        """
        match = _ADDRESS_PATTERN.match(text.strip()) if isinstance(text, str) else None
        if match is None:
            raise ValidationError(
                "address", text, "expected TYPE.NAME, TYPE.NAME[N] or TYPE.NAME[\"KEY\"]"
            )
        raw_key = match.group("key")
        key: IndexKey | None
        if raw_key is None:
            key = None
        elif raw_key.startswith('"'):
            key = json.loads(raw_key)
        else:
            key = int(raw_key)
        return cls(match.group("type"), match.group("name"), key)

    @classmethod
    def coerce(cls, value: "ResourceAddress | str") -> "ResourceAddress":
        """Accept either an address or its textual form."""
        if isinstance(value, ResourceAddress):
            return value
        return cls.parse(value)


def sort_addresses(addresses: Iterable[ResourceAddress]) -> list[ResourceAddress]:
    """Sort addresses by their textual representation."""
    return sorted(addresses, key=str)


@dataclass(frozen=True)
class ResourceNode:
    """
    A declared desired-state unit, produced by the graph builder.

    ``attributes`` holds literals and typed expressions (see
    :mod:`terraplan.expressions`). ``depends_on`` contains every upstream
    address: explicit ``depends_on`` entries plus edges implied by references.
    """

    address: ResourceAddress
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[ResourceAddress] = frozenset()
    prevent_destroy: bool = False
    create_before_destroy: bool = False
    ignore_changes: frozenset[str] = frozenset()
    tainted: bool = False
    provider: str | None = None

    @property
    def type(self) -> str:
        return self.address.type

    def ignores(self, attribute: str) -> bool:
        """True if changes to ``attribute`` are ignored by lifecycle.ignore_changes."""
        return "*" in self.ignore_changes or attribute in self.ignore_changes


@dataclass(frozen=True)
class ResourceInstance:
    """
    Last-known actual state of a resource, owned by the state store.

    Attributes:
        address: Identity of the resource
        external_id: Provider-assigned identifier
        attributes: Concrete values returned by the provider
        version: Monotonic revision, stamped by the store on every commit
        dependencies: Addresses this instance was created after
        tainted: Forces a replace on the next plan
        prevent_destroy: Lifecycle flag captured when last applied
        create_before_destroy: Lifecycle flag captured when last applied
        deposed: External IDs of replaced objects whose destroy failed
    """

    address: ResourceAddress
    external_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    dependencies: frozenset[ResourceAddress] = frozenset()
    tainted: bool = False
    prevent_destroy: bool = False
    create_before_destroy: bool = False
    deposed: tuple[str, ...] = ()

    def with_changes(self, **changes: Any) -> "ResourceInstance":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        data: dict[str, Any] = {
            "address": str(self.address),
            "external_id": self.external_id,
            "attributes": self.attributes,
            "version": self.version,
            "dependencies": [str(a) for a in sort_addresses(self.dependencies)],
        }
        if self.tainted:
            data["tainted"] = True
        if self.prevent_destroy:
            data["prevent_destroy"] = True
        if self.create_before_destroy:
            data["create_before_destroy"] = True
        if self.deposed:
            data["deposed"] = list(self.deposed)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceInstance":
        """Deserialize from a dictionary produced by :meth:`to_dict`."""
        return cls(
            address=ResourceAddress.parse(data["address"]),
            external_id=data["external_id"],
            attributes=dict(data.get("attributes", {})),
            version=int(data.get("version", 0)),
            dependencies=frozenset(ResourceAddress.parse(a) for a in data.get("dependencies", [])),
            tainted=bool(data.get("tainted", False)),
            prevent_destroy=bool(data.get("prevent_destroy", False)),
            create_before_destroy=bool(data.get("create_before_destroy", False)),
            deposed=tuple(data.get("deposed", ())),
        )


@dataclass(frozen=True)
class SnapshotInfo:
    """Summary of one snapshot in a workspace's history."""

    workspace: str
    serial: int
    lineage: str
    created_at: str
    instance_count: int


@dataclass(frozen=True)
class StateSnapshot:
    """
    Immutable, versioned view of every instance in a workspace.

    Snapshots are append-only: each commit produces a new one with
    ``serial + 1``. Serial 0 is the empty snapshot written when the
    workspace is created.
    """

    workspace: str
    serial: int
    lineage: str
    created_at: str
    instances: tuple[ResourceInstance, ...] = ()

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.instances, key=lambda i: str(i.address)))
        seen: set[ResourceAddress] = set()
        for instance in ordered:
            if instance.address in seen:
                raise ValueError(f"Duplicate instance {instance.address} in snapshot")
            seen.add(instance.address)
        object.__setattr__(self, "instances", ordered)

    @cached_property
    def _by_address(self) -> dict[ResourceAddress, ResourceInstance]:
        return {i.address: i for i in self.instances}

    def get(self, address: ResourceAddress) -> ResourceInstance | None:
        """Return the instance tracked at ``address``, if any."""
        return self._by_address.get(address)

    def __contains__(self, address: object) -> bool:
        return address in self._by_address

    def __len__(self) -> int:
        return len(self.instances)

    def __iter__(self) -> Iterator[ResourceInstance]:
        return iter(self.instances)

    @property
    def addresses(self) -> list[ResourceAddress]:
        """Tracked addresses, in textual order."""
        return [i.address for i in self.instances]

    @property
    def info(self) -> SnapshotInfo:
        return SnapshotInfo(
            workspace=self.workspace,
            serial=self.serial,
            lineage=self.lineage,
            created_at=self.created_at,
            instance_count=len(self.instances),
        )

    def with_instances(
        self,
        instances: "tuple[ResourceInstance, ...] | list[ResourceInstance]",
    ) -> "StateSnapshot":
        """Return a copy of this snapshot holding ``instances`` instead."""
        return StateSnapshot(
            workspace=self.workspace,
            serial=self.serial,
            lineage=self.lineage,
            created_at=self.created_at,
            instances=tuple(instances),
        )

    @classmethod
    def empty(cls, workspace: str, lineage: str) -> "StateSnapshot":
        """The initial snapshot of a freshly created workspace."""
        return cls(workspace=workspace, serial=0, lineage=lineage, created_at=utc_now_iso())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "workspace": self.workspace,
            "serial": self.serial,
            "lineage": self.lineage,
            "created_at": self.created_at,
            "instances": [i.to_dict() for i in self.instances],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StateSnapshot":
        """Deserialize from a dictionary produced by :meth:`to_dict`."""
        return cls(
            workspace=data["workspace"],
            serial=int(data["serial"]),
            lineage=data["lineage"],
            created_at=data["created_at"],
            instances=tuple(ResourceInstance.from_dict(i) for i in data.get("instances", [])),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "StateSnapshot":
        return cls.from_dict(json.loads(text))


@dataclass(frozen=True)
class StateMutation:
    """
    One change to commit: put or remove the instance at ``address``.

    ``expected_version`` is the stored version the writer observed
    (``None`` meaning "expected to be absent"). The store rejects the whole
    commit with VersionConflictError if any expectation is stale.
    """

    address: ResourceAddress
    instance: ResourceInstance | None
    expected_version: int | None

    @classmethod
    def put(cls, instance: ResourceInstance, expected_version: int | None) -> "StateMutation":
        return cls(address=instance.address, instance=instance, expected_version=expected_version)

    @classmethod
    def remove(cls, address: ResourceAddress, expected_version: int | None) -> "StateMutation":
        return cls(address=address, instance=None, expected_version=expected_version)

    @property
    def is_removal(self) -> bool:
        return self.instance is None


@dataclass(frozen=True)
class LockToken:
    """
    Proof of holding a workspace lock.

    Attributes:
        workspace: The locked workspace
        lock_id: Unique lock identifier (ULID)
        holder: Who acquired the lock (e.g., ``user@host``)
        operation: What the holder is doing (e.g., ``apply``)
        acquired_at: Acquisition time (epoch seconds)
        expires_at: Expiry time (epoch seconds), or None for no expiry
    """

    workspace: str
    lock_id: str
    holder: str
    operation: str
    acquired_at: float
    expires_at: float | None = None

    def expired(self, now: float | None = None) -> bool:
        """True if the lock has an expiry time that has passed."""
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace": self.workspace,
            "lock_id": self.lock_id,
            "holder": self.holder,
            "operation": self.operation,
            "acquired_at": self.acquired_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LockToken":
        expires_at = data.get("expires_at")
        return cls(
            workspace=data["workspace"],
            lock_id=data["lock_id"],
            holder=data["holder"],
            operation=data.get("operation", ""),
            acquired_at=float(data["acquired_at"]),
            expires_at=float(expires_at) if expires_at is not None else None,
        )
