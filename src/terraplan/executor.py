"""Apply engine.

:class:`Executor` applies a :class:`~terraplan.differ.ChangeSet` through the
providers while holding the workspace lock:

- entries run concurrently, at most ``parallelism`` at a time, each as soon
  as every entry it depends on has committed
- every successful entry is committed immediately, so progress survives a
  crash
- a failed entry fails its dependents (``UpstreamFailure``) without provider
  calls; unrelated branches continue
- cancellation is checked before each entry starts; in-flight provider calls
  finish and are committed

Per-entry errors are returned in :class:`ApplyResult`, never raised.
"""

import asyncio
import heapq
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .differ import Action, ChangeSet, ChangeSetEntry, stored_instances_of
from .exceptions import (
    InstanceNotFoundError,
    ResourceNotFoundError,
    StateError,
    UnresolvedReferenceError,
    UpstreamFailure,
    ValidationError,
    VersionConflictError,
)
from .expressions import Reference, SplatReference, evaluate, lookup_path
from .models import (
    LockToken,
    ResourceAddress,
    ResourceInstance,
    ResourceNode,
    StateMutation,
    StateSnapshot,
)
from .providers import ProviderProtocol, ProviderRegistry
from .state import StateStore

logger = logging.getLogger(__name__)


def default_parallelism() -> int:
    """Default worker pool size: ``min(32, cpu_count + 4)``."""
    return min(32, (os.cpu_count() or 1) + 4)


class EntryStatus(str, Enum):
    """Lifecycle of one change-set entry during apply."""

    PENDING = "pending"
    RUNNING = "running"
    COMMITTED = "committed"
    FAILED = "failed"


class ApplyStatus(str, Enum):
    """Overall outcome of an apply."""

    COMPLETE = "complete"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ApplyError:
    """A failed entry and what caused it."""

    address: ResourceAddress
    action: Action
    message: str
    cause: BaseException

    def __str__(self) -> str:
        return f"{self.action.value} {self.address}: {self.message}"


@dataclass
class ApplyResult:
    """
    Outcome of :meth:`Executor.apply`.

    ``snapshot`` is the last committed state: it includes every entry that
    committed, whether or not others failed.
    """

    change_set: ChangeSet
    snapshot: StateSnapshot
    status: ApplyStatus
    statuses: dict[ResourceAddress, EntryStatus]
    errors: list[ApplyError] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    deleted: int = 0
    replaced: int = 0

    @property
    def ok(self) -> bool:
        return self.status is ApplyStatus.COMPLETE

    def remaining(self) -> list[ChangeSetEntry]:
        """Entries left Pending or Failed, in plan order (input to a retry)."""
        return [
            e
            for e in self.change_set
            if self.statuses[e.address] in (EntryStatus.PENDING, EntryStatus.FAILED)
        ]

    def error_for(self, address: ResourceAddress) -> ApplyError | None:
        for error in self.errors:
            if error.address == address:
                return error
        return None


class _CommitFailed(Exception):
    """A state commit failed; dispatch must stop."""

    def __init__(self, cause: StateError) -> None:
        self.cause = cause
        super().__init__(str(cause))


class Executor:
    """
    Applies change-sets.

    Args:
        store: State store holding the target workspace
        providers: Provider registry
        parallelism: Maximum concurrent entries (default: ``min(32, cpu_count + 4)``)
    """

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        *,
        parallelism: int | None = None,
    ) -> None:
        if parallelism is not None and parallelism < 1:
            raise ValidationError("parallelism", parallelism, "must be >= 1")
        self.store = store
        self.providers = providers
        self.parallelism = parallelism or default_parallelism()

    async def apply(
        self,
        change_set: ChangeSet,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """
        Apply ``change_set`` under the workspace lock.

        Raises:
            LockConflictError: If the workspace is locked by someone else
            VersionConflictError: If the workspace lineage changed since planning
        """
        async with self.store.lock(change_set.workspace, "apply") as token:
            head = await self.store.read(change_set.workspace)
            if head.lineage != change_set.lineage:
                raise VersionConflictError(
                    None, change_set.base_serial, head.serial, workspace=change_set.workspace
                )
            run = _ApplyRun(self, change_set, token, head, cancel)
            return await run.execute()


class _ApplyRun:
    """State of one apply call."""

    def __init__(
        self,
        executor: Executor,
        change_set: ChangeSet,
        token: LockToken,
        head: StateSnapshot,
        cancel: asyncio.Event | None,
    ) -> None:
        self.store = executor.store
        self.providers = executor.providers
        self.parallelism = executor.parallelism
        self.change_set = change_set
        self.workspace = change_set.workspace
        self.token = token
        self.snapshot = head
        self.cancel = cancel
        self._commit_lock = asyncio.Lock()

        self.entries = {e.address: e for e in change_set}
        self.statuses = {a: EntryStatus.PENDING for a in self.entries}
        self.errors: list[ApplyError] = []
        self.counts = {"created": 0, "updated": 0, "deleted": 0, "replaced": 0}

        self.waiting: dict[ResourceAddress, int] = {}
        self.dependents: dict[ResourceAddress, list[ResourceAddress]] = {
            a: [] for a in self.entries
        }
        for entry in change_set:
            deps = [d for d in entry.depends_on if d in self.entries]
            self.waiting[entry.address] = len(deps)
            for dep in deps:
                self.dependents[dep].append(entry.address)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def execute(self) -> ApplyResult:
        ready: list[tuple[str, ResourceAddress]] = [
            (str(a), a) for a, count in self.waiting.items() if count == 0
        ]
        heapq.heapify(ready)
        running: dict[asyncio.Task[None], ResourceAddress] = {}
        cancelled = False
        halted = False

        try:
            while True:
                while ready and len(running) < self.parallelism and not halted:
                    if self.cancel is not None and self.cancel.is_set():
                        cancelled = True
                        break
                    _, address = heapq.heappop(ready)
                    entry = self.entries[address]
                    if entry.action is Action.NOOP and not entry.reason:
                        self.statuses[address] = EntryStatus.COMMITTED
                        self._release(address, ready)
                        continue
                    logger.debug("Starting %s", entry)
                    self.statuses[address] = EntryStatus.RUNNING
                    task = asyncio.create_task(self._run(entry), name=f"apply {address}")
                    running[task] = address

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: str(running[t])):
                    address = running.pop(task)
                    error = task.exception()
                    if error is None:
                        self.statuses[address] = EntryStatus.COMMITTED
                        self._release(address, ready)
                    elif isinstance(error, _CommitFailed):
                        halted = True
                        self._fail(address, error.cause)
                    else:
                        self._fail(address, error)
        finally:
            if running:
                # In-flight provider calls finish and commit while the lock is held
                logger.warning(
                    "Apply on workspace %s interrupted; waiting for %d running entries",
                    self.workspace,
                    len(running),
                )
                await asyncio.shield(asyncio.gather(*running, return_exceptions=True))

        if halted:
            status = ApplyStatus.ABORTED
        elif cancelled:
            status = ApplyStatus.CANCELLED
        elif self.errors:
            status = ApplyStatus.PARTIAL
        else:
            status = ApplyStatus.COMPLETE

        logger.info(
            "Apply on workspace %s finished %s: %d created, %d updated, %d replaced, "
            "%d deleted, %d error(s)",
            self.workspace,
            status.value,
            self.counts["created"],
            self.counts["updated"],
            self.counts["replaced"],
            self.counts["deleted"],
            len(self.errors),
        )
        return ApplyResult(
            change_set=self.change_set,
            snapshot=self.snapshot,
            status=status,
            statuses=dict(self.statuses),
            errors=list(self.errors),
            **self.counts,
        )

    def _release(self, address: ResourceAddress, ready: list[tuple[str, ResourceAddress]]) -> None:
        for dependent in self.dependents[address]:
            self.waiting[dependent] -= 1
            if self.waiting[dependent] == 0 and self.statuses[dependent] is EntryStatus.PENDING:
                heapq.heappush(ready, (str(dependent), dependent))

    def _fail(self, address: ResourceAddress, cause: BaseException) -> None:
        entry = self.entries[address]
        self.statuses[address] = EntryStatus.FAILED
        message = str(cause) or type(cause).__name__
        self.errors.append(ApplyError(address, entry.action, message, cause))
        logger.warning("%s failed: %s", entry, cause)

        # Dependents cannot be running: they were waiting on this entry
        stack = list(self.dependents[address])
        while stack:
            dependent = stack.pop()
            if self.statuses[dependent] is not EntryStatus.PENDING:
                continue
            upstream = UpstreamFailure(dependent, address)
            self.statuses[dependent] = EntryStatus.FAILED
            self.errors.append(
                ApplyError(dependent, self.entries[dependent].action, str(upstream), upstream)
            )
            logger.warning("%s", upstream)
            stack.extend(self.dependents[dependent])

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    async def _commit(self, mutation: StateMutation) -> StateSnapshot:
        async with self._commit_lock:
            try:
                snapshot = await self.store.commit(self.workspace, self.token, [mutation])
            except StateError as e:
                raise _CommitFailed(e) from e
            self.snapshot = snapshot
            return snapshot

    def _check_version(self, entry: ChangeSetEntry) -> None:
        current = self.snapshot.get(entry.address)
        actual = current.version if current is not None else None
        if actual != entry.expected_version:
            raise VersionConflictError(
                entry.address, entry.expected_version, actual, workspace=self.workspace
            )

    def _desired(self, node: ResourceNode) -> dict[str, Any]:
        """Evaluate a node's attributes against committed upstream instances."""
        source = str(node.address)

        def value_of(ref: Reference) -> Any:
            instance = self.snapshot.get(ref.target)
            if instance is None:
                raise UnresolvedReferenceError(source, str(ref), "not in state")
            if ref.attribute == "id":
                value = instance.external_id
            elif ref.attribute in instance.attributes:
                value = instance.attributes[ref.attribute]
            else:
                raise UnresolvedReferenceError(source, str(ref), "attribute not in state")
            try:
                return lookup_path(value, ref.path[1:])
            except LookupError:
                raise UnresolvedReferenceError(source, str(ref), "no such attribute path") from None

        def values_of(ref: SplatReference) -> Any:
            return [
                value_of(Reference(ref.type, ref.name, a.key, ref.path))
                for a in stored_instances_of(self.snapshot, ref.type, ref.name)
            ]

        desired: dict[str, Any] = evaluate(node.attributes, value_of, values_of)
        return desired

    def _provider(self, entry: ChangeSetEntry) -> ProviderProtocol:
        name = entry.node.provider if entry.node is not None else None
        return self.providers.resolve(entry.address.type, name)

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def _run(self, entry: ChangeSetEntry) -> None:
        self._check_version(entry)
        if entry.action is Action.NOOP:
            await self._refresh_lifecycle(entry)
        elif entry.action is Action.CREATE:
            await self._recreate(entry)
            self.counts["created"] += 1
        elif entry.action is Action.UPDATE:
            await self._update(entry)
            self.counts["updated"] += 1
        elif entry.action is Action.DELETE:
            await self._delete(entry)
            self.counts["deleted"] += 1
        elif entry.create_before_destroy:
            await self._replace_create_first(entry)
            self.counts["replaced"] += 1
        else:
            await self._replace_destroy_first(entry)
            self.counts["replaced"] += 1

    def _instance(
        self,
        node: ResourceNode,
        external_id: str,
        attributes: dict[str, Any],
        deposed: tuple[str, ...] = (),
    ) -> ResourceInstance:
        return ResourceInstance(
            address=node.address,
            external_id=external_id,
            attributes=attributes,
            dependencies=node.depends_on,
            prevent_destroy=node.prevent_destroy,
            create_before_destroy=node.create_before_destroy,
            deposed=deposed,
        )

    async def _create(
        self,
        entry: ChangeSetEntry,
        expected_version: int | None,
        deposed: tuple[str, ...] = (),
    ) -> StateSnapshot:
        node = entry.desired_node()
        desired = self._desired(node)
        provider = self._provider(entry)
        external_id, result = await provider.create(entry.address.type, desired)
        logger.debug("Created %s as %s", entry.address, external_id)
        instance = self._instance(node, external_id, {**desired, **result}, deposed)
        return await self._commit(StateMutation.put(instance, expected_version))

    async def _recreate(self, entry: ChangeSetEntry) -> None:
        # A create can target an address still in state when its object was
        # deleted outside of terraplan; its deposed objects stay tracked.
        stored = self.snapshot.get(entry.address)
        deposed: tuple[str, ...] = ()
        if stored is not None and stored.deposed:
            deposed = await self._destroy_deposed(entry, stored.deposed)
        await self._create(entry, entry.expected_version, deposed)

    async def _destroy(self, entry: ChangeSetEntry, external_id: str) -> None:
        provider = self._provider(entry)
        try:
            await provider.delete(entry.address.type, external_id)
        except ResourceNotFoundError:
            logger.debug("%s (%s) was already gone", entry.address, external_id)

    async def _destroy_deposed(
        self,
        entry: ChangeSetEntry,
        deposed: tuple[str, ...],
    ) -> tuple[str, ...]:
        """Delete leftover objects of earlier replacements; return the ones still alive."""
        remaining = []
        for external_id in deposed:
            try:
                await self._destroy(entry, external_id)
            except Exception:
                logger.warning(
                    "Could not destroy deposed object %s of %s",
                    external_id,
                    entry.address,
                    exc_info=True,
                )
                remaining.append(external_id)
        return tuple(remaining)

    async def _refresh_lifecycle(self, entry: ChangeSetEntry) -> None:
        node = entry.desired_node()
        instance = entry.stored_instance().with_changes(
            dependencies=node.depends_on,
            prevent_destroy=node.prevent_destroy,
            create_before_destroy=node.create_before_destroy,
        )
        await self._commit(StateMutation.put(instance, entry.expected_version))

    async def _update(self, entry: ChangeSetEntry) -> None:
        node = entry.desired_node()
        prior = entry.stored_instance()
        deposed = await self._destroy_deposed(entry, prior.deposed)
        changes: dict[str, Any] = {}
        result: dict[str, Any] = {}
        if entry.diffs:
            desired = self._desired(node)
            changes = {d.name: desired[d.name] for d in entry.diffs}
            result = await self._provider(entry).update(
                entry.address.type, prior.external_id, changes
            )
        instance = self._instance(
            node,
            prior.external_id,
            {**prior.attributes, **changes, **result},
            deposed,
        )
        await self._commit(StateMutation.put(instance, entry.expected_version))

    async def _delete(self, entry: ChangeSetEntry) -> None:
        prior = entry.stored_instance()
        # Deposed objects were never refreshed, so a vanished instance may
        # still have live ones
        for external_id in prior.deposed:
            await self._destroy(entry, external_id)
        if not entry.state_only:
            await self._destroy(entry, prior.external_id)
        await self._commit(StateMutation.remove(entry.address, entry.expected_version))

    async def _replace_destroy_first(self, entry: ChangeSetEntry) -> None:
        prior = entry.stored_instance()
        entry.desired_node()  # fail before anything is destroyed
        await self._destroy(entry, prior.external_id)
        deposed = await self._destroy_deposed(entry, prior.deposed)
        if deposed:
            # Keep tracking leftovers under the address until they are
            # destroyed. Tainted, since its object is gone if the create fails.
            placeholder = prior.with_changes(deposed=deposed, tainted=True)
            snapshot = await self._commit(StateMutation.put(placeholder, entry.expected_version))
            await self._create(entry, snapshot.serial, deposed)
            return
        await self._commit(StateMutation.remove(entry.address, entry.expected_version))
        await self._create(entry, None)

    async def _replace_create_first(self, entry: ChangeSetEntry) -> None:
        old = entry.stored_instance()
        # If create fails the old object is untouched and still tracked
        snapshot = await self._create(
            entry, entry.expected_version, (old.external_id, *old.deposed)
        )
        version = snapshot.serial
        await self._destroy(entry, old.external_id)
        leftover = await self._destroy_deposed(entry, old.deposed)
        current = snapshot.get(entry.address)
        if current is None:
            raise InstanceNotFoundError(self.workspace, entry.address)
        await self._commit(
            StateMutation.put(current.with_changes(deposed=leftover), version)
        )
