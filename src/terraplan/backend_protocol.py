"""Storage protocol for state backends.

This module defines the StateBackendProtocol that all persistence backends
must implement. The protocol uses Python's typing.Protocol with
@runtime_checkable decorator, enabling duck typing and isinstance() checks
at runtime.

Backends are deliberately dumb: they store append-only snapshots and a
single lock record per workspace, and offer these atomic primitives:

- **acquire_lock**: take the lock if it is free or expired
- **write_snapshot**: append a snapshot if the caller still holds the lock
  and the head serial is what the caller expected (compare-and-swap)
- **delete_workspace**: drop the workspace under the same two conditions

Everything else (version checks, workspace rules, retries) lives in
:class:`~terraplan.state.StateStore`.
"""

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import LockToken, SnapshotInfo, StateSnapshot


@runtime_checkable
class StateBackendProtocol(Protocol):
    """
    Protocol for state persistence backends.

    Example:
        class MyBackend:
            async def list_workspaces(self) -> list[str]:
                ...

        backend = MyBackend()
        assert isinstance(backend, StateBackendProtocol)  # True at runtime
    """

    # -------------------------------------------------------------------------
    # Workspaces
    # -------------------------------------------------------------------------

    async def list_workspaces(self) -> list[str]:
        """Return all workspace names, sorted."""
        ...

    async def create_workspace(self, snapshot: "StateSnapshot") -> None:
        """
        Create a workspace whose history starts with ``snapshot`` (serial 0).

        Raises:
            WorkspaceExistsError: If the workspace already exists
        """
        ...

    async def delete_workspace(
        self,
        workspace: str,
        *,
        lock_id: str,
        expected_serial: int,
    ) -> None:
        """
        Remove a workspace, its whole history and its lock record.

        The caller must hold the lock, and the head serial must still be
        ``expected_serial`` when the delete takes effect.

        Raises:
            StaleLockError: If ``lock_id`` is not the current, unexpired lock
            VersionConflictError: If the head serial moved
            WorkspaceNotFoundError: If the workspace does not exist
        """
        ...

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def read_snapshot(self, workspace: str, serial: int | None = None) -> "StateSnapshot":
        """
        Read the head snapshot, or a specific serial.

        Raises:
            WorkspaceNotFoundError: If the workspace does not exist
            SnapshotNotFoundError: If ``serial`` is not in the history
        """
        ...

    async def list_snapshots(self, workspace: str) -> list["SnapshotInfo"]:
        """
        List the history of a workspace, oldest first.

        Raises:
            WorkspaceNotFoundError: If the workspace does not exist
        """
        ...

    async def write_snapshot(
        self,
        snapshot: "StateSnapshot",
        *,
        lock_id: str,
        expected_serial: int,
    ) -> None:
        """
        Append ``snapshot`` as the new head, atomically.

        Args:
            snapshot: The new snapshot (``serial == expected_serial + 1``)
            lock_id: Lock the writer holds
            expected_serial: Head serial the writer read

        Raises:
            StaleLockError: If ``lock_id`` is not the current, unexpired lock
            VersionConflictError: If the head serial moved
            WorkspaceNotFoundError: If the workspace does not exist
        """
        ...

    # -------------------------------------------------------------------------
    # Locks
    # -------------------------------------------------------------------------

    async def acquire_lock(self, token: "LockToken") -> "LockToken":
        """
        Store ``token`` as the workspace lock if no unexpired lock exists.

        Raises:
            LockConflictError: Naming the current holder
            WorkspaceNotFoundError: If the workspace does not exist
        """
        ...

    async def get_lock(self, workspace: str) -> "LockToken | None":
        """Return the current lock record (possibly expired), or None."""
        ...

    async def release_lock(self, workspace: str, lock_id: str) -> bool:
        """
        Remove the lock record if it carries ``lock_id``.

        Returns:
            True if released, False if the lock was not held by ``lock_id``
        """
        ...

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Release connections and other resources."""
        ...
