"""Exceptions for terraplan."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ResourceAddress


# ---------------------------------------------------------------------------
# Base Exception
# ---------------------------------------------------------------------------


class TerraplanError(Exception):
    """
    Base exception for all terraplan errors.

    All exceptions raised by this library inherit from this class,
    allowing callers to catch all library-specific errors with a single
    except clause.
    """

    pass


# ---------------------------------------------------------------------------
# Category Exceptions
# ---------------------------------------------------------------------------


class ConfigError(TerraplanError):
    """
    Base exception for configuration errors.

    Raised while building the resource graph, before anything is planned
    or applied. Nothing has been executed when one of these is raised.
    """

    pass


class PlanError(TerraplanError):
    """
    Base exception for errors that reject a whole plan.

    No ChangeSet is produced and nothing is applied.
    """

    pass


class StateError(TerraplanError):
    """
    Base exception for state store errors.

    This includes lock conflicts, stale locks, optimistic concurrency
    conflicts and workspace lifecycle errors.
    """

    pass


class ProviderError(TerraplanError):
    """
    Base exception for provider capability errors.

    Providers may raise any exception; the executor records them verbatim.
    This class exists for the failures the core itself interprets.
    """

    pass


# ---------------------------------------------------------------------------
# Configuration Exceptions
# ---------------------------------------------------------------------------


class ValidationError(ConfigError):
    """
    Raised when a user-supplied value fails validation.

    Attributes:
        field: The field that failed validation
        value: The invalid value
        reason: Why the value is invalid
    """

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class DuplicateAddressError(ConfigError):
    """Raised when two declarations expand to the same resource address."""

    def __init__(self, address: "ResourceAddress") -> None:
        self.address = address
        super().__init__(f"Duplicate resource address: {address}")


class InvalidIndexKeyError(ConfigError):
    """Raised when a count/for_each value yields an invalid or duplicate key."""

    def __init__(self, resource: str, key: Any, reason: str) -> None:
        self.resource = resource
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid index key {key!r} for {resource}: {reason}")


class UnresolvedReferenceError(ConfigError):
    """
    Raised when a reference points to a node, attribute or variable
    that does not exist.

    Attributes:
        source: Address (or declaration name) holding the reference
        reference: The reference text as written
        reason: What could not be resolved
    """

    def __init__(self, source: str, reference: str, reason: str) -> None:
        self.source = source
        self.reference = reference
        self.reason = reason
        super().__init__(f"Unresolved reference {reference!r} in {source}: {reason}")


class CyclicDependencyError(ConfigError):
    """
    Raised when the dependency graph contains a cycle.

    Attributes:
        cycle: Addresses forming the cycle, in traversal order. The first
            member is repeated at the end to close the loop.
    """

    def __init__(self, cycle: list["ResourceAddress"]) -> None:
        self.cycle = cycle
        path = " -> ".join(str(a) for a in cycle)
        super().__init__(f"Dependency cycle detected: {path}")


# ---------------------------------------------------------------------------
# Plan Exceptions
# ---------------------------------------------------------------------------


class PreventDestroyViolation(PlanError):  # noqa: N818
    """
    Raised when a plan would delete or replace a prevent_destroy resource.

    Attributes:
        addresses: Every offending address (sorted)
    """

    def __init__(self, addresses: list["ResourceAddress"]) -> None:
        if not addresses:
            raise ValueError("PreventDestroyViolation requires at least one address")
        self.addresses = sorted(addresses, key=str)
        names = ", ".join(str(a) for a in self.addresses)
        super().__init__(
            f"Plan would destroy resources with lifecycle.prevent_destroy set: {names}"
        )


class MalformedEntryError(PlanError):
    """
    Raised when a change-set entry lacks what its action needs.

    Creates, updates and replaces need the desired node; updates, deletes
    and replaces need the stored instance.

    Attributes:
        address: The entry's address
        missing: ``"node"`` or ``"prior"``
    """

    def __init__(self, address: "ResourceAddress", missing: str) -> None:
        self.address = address
        self.missing = missing
        super().__init__(f"Change-set entry {address} has no {missing}")


# ---------------------------------------------------------------------------
# State Exceptions
# ---------------------------------------------------------------------------


class LockConflictError(StateError):
    """
    Raised when a workspace lock is held by someone else.

    Retryable by the caller after backoff; the core never retries silently.

    Attributes:
        workspace: The locked workspace
        holder: Who holds the lock
        acquired_at: When the current holder acquired it (epoch seconds)
        lock_id: Identifier of the current lock
    """

    def __init__(
        self,
        workspace: str,
        holder: str | None = None,
        acquired_at: float | None = None,
        lock_id: str | None = None,
    ) -> None:
        self.workspace = workspace
        self.holder = holder
        self.acquired_at = acquired_at
        self.lock_id = lock_id
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [f"Workspace '{self.workspace}' is locked"]
        context = []
        if self.holder:
            context.append(f"holder={self.holder}")
        if self.acquired_at is not None:
            context.append(f"acquired_at={self.acquired_at:.3f}")
        if self.lock_id:
            context.append(f"lock_id={self.lock_id}")
        if context:
            parts.append(f"[{', '.join(context)}]")
        return " ".join(parts)


class StaleLockError(StateError):
    """Raised when a lock token is expired or no longer held."""

    def __init__(self, workspace: str, lock_id: str, reason: str = "lock is not held") -> None:
        self.workspace = workspace
        self.lock_id = lock_id
        self.reason = reason
        super().__init__(f"Stale lock {lock_id} for workspace '{workspace}': {reason}")


class VersionConflictError(StateError):
    """
    Raised when a mutation was prepared against an outdated instance version.

    The caller must re-plan against fresh state.

    Attributes:
        address: The conflicting resource address (None for a whole-snapshot conflict)
        expected: The version the writer expected (None = expected absent)
        actual: The stored version (None = absent)
    """

    def __init__(
        self,
        address: "ResourceAddress | None",
        expected: int | None,
        actual: int | None,
        workspace: str | None = None,
    ) -> None:
        self.address = address
        self.expected = expected
        self.actual = actual
        self.workspace = workspace
        target = str(address) if address is not None else f"workspace '{workspace}'"
        super().__init__(
            f"Version conflict on {target}: expected {_fmt_version(expected)}, "
            f"found {_fmt_version(actual)}"
        )


def _fmt_version(version: int | None) -> str:
    return "absent" if version is None else f"v{version}"


class WorkspaceNotEmpty(StateError):  # noqa: N818
    """Raised when deleting a workspace that still tracks resources."""

    def __init__(self, workspace: str, count: int) -> None:
        self.workspace = workspace
        self.count = count
        super().__init__(f"Workspace '{workspace}' still tracks {count} resource instance(s)")


class WorkspaceNotFoundError(StateError):
    """Raised when a workspace does not exist."""

    def __init__(self, workspace: str) -> None:
        self.workspace = workspace
        super().__init__(f"Workspace not found: {workspace}")


class WorkspaceExistsError(StateError):
    """Raised when trying to create a workspace that already exists."""

    def __init__(self, workspace: str) -> None:
        self.workspace = workspace
        super().__init__(f"Workspace already exists: {workspace}")


class SnapshotNotFoundError(StateError):
    """Raised when a snapshot serial does not exist in a workspace's history."""

    def __init__(self, workspace: str, serial: int) -> None:
        self.workspace = workspace
        self.serial = serial
        super().__init__(f"Snapshot {serial} not found in workspace '{workspace}'")


class InstanceNotFoundError(StateError):
    """Raised when a state operation targets an address that is not tracked."""

    def __init__(self, workspace: str, address: "ResourceAddress") -> None:
        self.workspace = workspace
        self.address = address
        super().__init__(f"No instance {address} in workspace '{workspace}'")


# ---------------------------------------------------------------------------
# Provider Exceptions
# ---------------------------------------------------------------------------


class ResourceNotFoundError(ProviderError):
    """
    Raised by providers when a remote object no longer exists.

    On read during planning this means "deleted out-of-band" and drives a
    Create on the next plan.
    """

    def __init__(self, resource_type: str, external_id: str) -> None:
        self.resource_type = resource_type
        self.external_id = external_id
        super().__init__(f"{resource_type} {external_id} not found")


class ProviderNotFoundError(ProviderError):
    """Raised when no registered provider handles a resource type."""

    def __init__(self, resource_type: str, provider: str | None = None) -> None:
        self.resource_type = resource_type
        self.provider = provider
        name = f" (provider '{provider}')" if provider else ""
        super().__init__(f"No provider registered for resource type {resource_type}{name}")


# ---------------------------------------------------------------------------
# Apply Exceptions
# ---------------------------------------------------------------------------


class UpstreamFailure(TerraplanError):  # noqa: N818
    """
    Recorded for an entry skipped because one of its dependencies failed.

    Never raised by ``Executor.apply``; it appears as ``ApplyError.cause``.
    """

    def __init__(self, address: "ResourceAddress", upstream: "ResourceAddress") -> None:
        self.address = address
        self.upstream = upstream
        super().__init__(f"{address} skipped: dependency {upstream} failed")
