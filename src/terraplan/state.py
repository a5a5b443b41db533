"""State store facade.

:class:`StateStore` wraps a :class:`~terraplan.backend_protocol.StateBackendProtocol`
and implements the rules every backend shares:

- lock acquisition (fail-fast or polling with capped exponential backoff)
- version-checked, all-or-nothing commits
- workspace lifecycle (``default`` always exists and cannot be deleted)
- history, restore and state surgery (taint, untaint, forget, move)

Example:
    store = StateStore(LocalBackend(".terraplan"), lock_timeout=30)
    async with store.lock("staging") as token:
        head = await store.read("staging")
        await store.commit("staging", token, [StateMutation.remove(addr, 3)])
"""

import asyncio
import getpass
import logging
import socket
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from ulid import ULID

from .backend_protocol import StateBackendProtocol
from .exceptions import (
    InstanceNotFoundError,
    LockConflictError,
    StaleLockError,
    ValidationError,
    VersionConflictError,
    WorkspaceExistsError,
    WorkspaceNotEmpty,
)
from .models import (
    LockToken,
    ResourceAddress,
    ResourceInstance,
    SnapshotInfo,
    StateMutation,
    StateSnapshot,
    utc_now_iso,
)
from .naming import DEFAULT_WORKSPACE, validate_workspace_name

logger = logging.getLogger(__name__)

MAX_POLL_INTERVAL = 5.0


def default_holder() -> str:
    """Identify this process as ``user@host``."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class StateStore:
    """
    Versioned, lockable, workspace-partitioned state.

    Args:
        backend: Storage backend
        lock_timeout: Seconds to keep retrying a held lock (0 = fail fast)
        lock_poll_interval: Initial delay between lock attempts; doubles up to 5s
        lock_ttl: Seconds after which a lock may be taken over (None = never)
        holder: Identity recorded in locks (default: ``user@host``)
    """

    def __init__(
        self,
        backend: StateBackendProtocol,
        *,
        lock_timeout: float = 0.0,
        lock_poll_interval: float = 0.2,
        lock_ttl: float | None = None,
        holder: str | None = None,
    ) -> None:
        if lock_timeout < 0:
            raise ValidationError("lock_timeout", lock_timeout, "must be >= 0")
        if lock_poll_interval <= 0:
            raise ValidationError("lock_poll_interval", lock_poll_interval, "must be > 0")
        if lock_ttl is not None and lock_ttl <= 0:
            raise ValidationError("lock_ttl", lock_ttl, "must be > 0")
        self._backend = backend
        self.lock_timeout = lock_timeout
        self.lock_poll_interval = lock_poll_interval
        self.lock_ttl = lock_ttl
        self.holder = holder or default_holder()
        self._default_ready = False

    @property
    def backend(self) -> StateBackendProtocol:
        return self._backend

    async def __aenter__(self) -> "StateStore":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._backend.close()

    async def _prepare(self, workspace: str) -> None:
        validate_workspace_name(workspace)
        if workspace == DEFAULT_WORKSPACE and not self._default_ready:
            try:
                await self._backend.create_workspace(
                    StateSnapshot.empty(DEFAULT_WORKSPACE, str(ULID()))
                )
                logger.info("Created workspace %s", DEFAULT_WORKSPACE)
            except WorkspaceExistsError:
                pass
            self._default_ready = True

    # -------------------------------------------------------------------------
    # Locks
    # -------------------------------------------------------------------------

    def _new_token(self, workspace: str, operation: str) -> LockToken:
        now = time.time()
        return LockToken(
            workspace=workspace,
            lock_id=str(ULID()),
            holder=self.holder,
            operation=operation,
            acquired_at=now,
            expires_at=now + self.lock_ttl if self.lock_ttl is not None else None,
        )

    async def acquire_lock(self, workspace: str, operation: str = "apply") -> LockToken:
        """
        Acquire the workspace lock.

        Fails immediately when ``lock_timeout`` is 0, otherwise retries until
        the timeout elapses.

        Raises:
            LockConflictError: Naming the current holder and acquisition time
            WorkspaceNotFoundError: If the workspace does not exist
        """
        await self._prepare(workspace)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lock_timeout
        delay = self.lock_poll_interval
        while True:
            try:
                token = await self._backend.acquire_lock(self._new_token(workspace, operation))
            except LockConflictError as e:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise
                logger.debug(
                    "Workspace %s locked by %s, retrying in %.2fs", workspace, e.holder, delay
                )
                await asyncio.sleep(min(delay, remaining))
                delay = min(delay * 2, MAX_POLL_INTERVAL)
                continue
            logger.info(
                "Acquired lock %s on workspace %s (%s)", token.lock_id, workspace, operation
            )
            return token

    async def release_lock(self, token: LockToken) -> bool:
        """
        Release a lock.

        Returns:
            False if the lock was no longer held by ``token`` (taken over or force-unlocked)
        """
        released = await self._backend.release_lock(token.workspace, token.lock_id)
        if released:
            logger.info("Released lock %s on workspace %s", token.lock_id, token.workspace)
        else:
            logger.warning(
                "Lock %s on workspace %s was no longer held at release",
                token.lock_id,
                token.workspace,
            )
        return released

    async def _release_after_error(self, token: LockToken) -> None:
        try:
            await self.release_lock(token)
        except Exception:
            logger.warning(
                "Failed to release lock %s on workspace %s",
                token.lock_id,
                token.workspace,
                exc_info=True,
            )

    @asynccontextmanager
    async def lock(self, workspace: str, operation: str = "apply") -> AsyncIterator[LockToken]:
        """Hold the workspace lock for the duration of the block; always released."""
        token = await self.acquire_lock(workspace, operation)
        try:
            yield token
        except BaseException:
            await self._release_after_error(token)
            raise
        else:
            await self.release_lock(token)

    @asynccontextmanager
    async def _locked(
        self,
        workspace: str,
        token: LockToken | None,
        operation: str,
    ) -> AsyncIterator[LockToken]:
        if token is not None:
            yield token
        else:
            async with self.lock(workspace, operation) as acquired:
                yield acquired

    async def get_lock(self, workspace: str) -> LockToken | None:
        """Return the current lock on a workspace, if any."""
        await self._prepare(workspace)
        return await self._backend.get_lock(workspace)

    async def force_unlock(self, workspace: str, lock_id: str) -> None:
        """
        Remove a lock held by someone else (e.g. a crashed process).

        Raises:
            StaleLockError: If the current lock does not carry ``lock_id``
        """
        await self._prepare(workspace)
        current = await self._backend.get_lock(workspace)
        if current is None or current.lock_id != lock_id:
            raise StaleLockError(workspace, lock_id, "no lock with this id")
        if not await self._backend.release_lock(workspace, lock_id):
            raise StaleLockError(workspace, lock_id, "no lock with this id")
        logger.warning(
            "Force-unlocked workspace %s (lock %s held by %s)", workspace, lock_id, current.holder
        )

    # -------------------------------------------------------------------------
    # Read / commit
    # -------------------------------------------------------------------------

    async def read(self, workspace: str) -> StateSnapshot:
        """Return the last committed snapshot. Never waits for the lock."""
        await self._prepare(workspace)
        return await self._backend.read_snapshot(workspace)

    async def commit(
        self,
        workspace: str,
        token: LockToken,
        mutations: Sequence[StateMutation],
    ) -> StateSnapshot:
        """
        Apply ``mutations`` as one new snapshot.

        Every mutated instance is stamped with the new snapshot serial as its
        version. Nothing is written if any check fails.

        Raises:
            StaleLockError: If ``token`` is not the current, unexpired lock
            VersionConflictError: If an expected version does not match storage
        """
        if token.workspace != workspace:
            raise StaleLockError(
                workspace, token.lock_id, f"token is for workspace '{token.workspace}'"
            )
        if token.expired():
            raise StaleLockError(workspace, token.lock_id, "lock has expired")
        await self._prepare(workspace)

        head = await self._backend.read_snapshot(workspace)
        if not mutations:
            return head

        seen: set[ResourceAddress] = set()
        for mutation in mutations:
            if mutation.address in seen:
                raise ValidationError("mutations", str(mutation.address), "address mutated twice")
            seen.add(mutation.address)
            current = head.get(mutation.address)
            actual = current.version if current is not None else None
            if actual != mutation.expected_version:
                raise VersionConflictError(
                    mutation.address, mutation.expected_version, actual, workspace=workspace
                )

        serial = head.serial + 1
        instances = {i.address: i for i in head}
        for mutation in mutations:
            if mutation.instance is None:
                instances.pop(mutation.address, None)
            else:
                instances[mutation.address] = mutation.instance.with_changes(
                    address=mutation.address, version=serial
                )

        snapshot = StateSnapshot(
            workspace=workspace,
            serial=serial,
            lineage=head.lineage,
            created_at=utc_now_iso(),
            instances=tuple(instances.values()),
        )
        await self._backend.write_snapshot(
            snapshot, lock_id=token.lock_id, expected_serial=head.serial
        )
        logger.info(
            "Committed serial %d to workspace %s (%d mutation(s))",
            serial,
            workspace,
            len(mutations),
        )
        return snapshot

    # -------------------------------------------------------------------------
    # Workspaces
    # -------------------------------------------------------------------------

    async def list_workspaces(self) -> list[str]:
        await self._prepare(DEFAULT_WORKSPACE)
        return await self._backend.list_workspaces()

    async def create_workspace(self, name: str) -> StateSnapshot:
        """
        Create an empty workspace with a fresh lineage.

        Raises:
            WorkspaceExistsError: If it already exists
        """
        await self._prepare(name)
        snapshot = StateSnapshot.empty(name, str(ULID()))
        await self._backend.create_workspace(snapshot)
        logger.info("Created workspace %s", name)
        return snapshot

    async def delete_workspace(self, name: str) -> None:
        """
        Delete an empty, unlocked workspace and its history.

        The workspace lock is taken for the check, and the backend deletes
        only if the head is still the empty snapshot that was checked. The
        lock record goes away with the workspace.

        Raises:
            ValidationError: For the default workspace
            WorkspaceNotEmpty: If any instance is still tracked
            LockConflictError: If the workspace is locked
        """
        validate_workspace_name(name)
        if name == DEFAULT_WORKSPACE:
            raise ValidationError("workspace", name, "The default workspace cannot be deleted")
        token = await self.acquire_lock(name, "delete-workspace")
        try:
            head = await self._backend.read_snapshot(name)
            if len(head):
                raise WorkspaceNotEmpty(name, len(head))
            await self._backend.delete_workspace(
                name, lock_id=token.lock_id, expected_serial=head.serial
            )
        except BaseException:
            await self._release_after_error(token)
            raise
        logger.info("Deleted workspace %s", name)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def list_versions(self, workspace: str) -> list[SnapshotInfo]:
        """Snapshot history of a workspace, oldest first."""
        await self._prepare(workspace)
        return await self._backend.list_snapshots(workspace)

    async def read_version(self, workspace: str, serial: int) -> StateSnapshot:
        """
        Read a past snapshot.

        Raises:
            SnapshotNotFoundError: If ``serial`` is not in the history
        """
        await self._prepare(workspace)
        return await self._backend.read_snapshot(workspace, serial)

    async def restore_version(
        self,
        workspace: str,
        serial: int,
        token: LockToken | None = None,
    ) -> StateSnapshot:
        """
        Make the content of snapshot ``serial`` current again.

        History is never rewritten: the restore is a new commit whose
        instances equal the old snapshot's.
        """
        old = await self.read_version(workspace, serial)
        async with self._locked(workspace, token, "restore") as held:
            head = await self.read(workspace)
            mutations = [
                StateMutation.put(
                    instance,
                    head.get(instance.address).version if instance.address in head else None,
                )
                for instance in old
                if head.get(instance.address) != instance
            ]
            mutations.extend(
                StateMutation.remove(current.address, current.version)
                for current in head
                if current.address not in old
            )
            logger.info("Restoring workspace %s to serial %d", workspace, serial)
            return await self.commit(workspace, held, mutations)

    # -------------------------------------------------------------------------
    # State surgery
    # -------------------------------------------------------------------------

    async def _require(self, workspace: str, address: ResourceAddress | str) -> ResourceInstance:
        head = await self.read(workspace)
        target = ResourceAddress.coerce(address)
        instance = head.get(target)
        if instance is None:
            raise InstanceNotFoundError(workspace, target)
        return instance

    async def taint(
        self,
        workspace: str,
        address: ResourceAddress | str,
        token: LockToken | None = None,
    ) -> StateSnapshot:
        """Mark an instance tainted so the next plan replaces it."""
        async with self._locked(workspace, token, "taint") as held:
            instance = await self._require(workspace, address)
            mutation = StateMutation.put(instance.with_changes(tainted=True), instance.version)
            return await self.commit(workspace, held, [mutation])

    async def untaint(
        self,
        workspace: str,
        address: ResourceAddress | str,
        token: LockToken | None = None,
    ) -> StateSnapshot:
        """Clear the tainted mark."""
        async with self._locked(workspace, token, "untaint") as held:
            instance = await self._require(workspace, address)
            mutation = StateMutation.put(instance.with_changes(tainted=False), instance.version)
            return await self.commit(workspace, held, [mutation])

    async def forget(
        self,
        workspace: str,
        address: ResourceAddress | str,
        token: LockToken | None = None,
    ) -> StateSnapshot:
        """Stop tracking an instance without deleting the remote object."""
        async with self._locked(workspace, token, "forget") as held:
            instance = await self._require(workspace, address)
            return await self.commit(
                workspace, held, [StateMutation.remove(instance.address, instance.version)]
            )

    async def move(
        self,
        workspace: str,
        source: ResourceAddress | str,
        destination: ResourceAddress | str,
        token: LockToken | None = None,
    ) -> StateSnapshot:
        """
        Track an instance under a new address (e.g. after a rename in configuration).

        Dependencies recorded by other instances are rewritten to the new address.

        Raises:
            InstanceNotFoundError: If ``source`` is not tracked
            ValidationError: If ``destination`` is already tracked
        """
        target = ResourceAddress.coerce(destination)
        async with self._locked(workspace, token, "move") as held:
            instance = await self._require(workspace, source)
            head = await self.read(workspace)
            if target in head:
                raise ValidationError("destination", str(target), "address is already tracked")
            mutations = [
                StateMutation.remove(instance.address, instance.version),
                StateMutation.put(instance.with_changes(address=target), None),
            ]
            for other in head:
                if other.address != instance.address and instance.address in other.dependencies:
                    rewritten = (other.dependencies - {instance.address}) | {target}
                    mutations.append(
                        StateMutation.put(other.with_changes(dependencies=rewritten), other.version)
                    )
            return await self.commit(workspace, held, mutations)
