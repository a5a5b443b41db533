"""In-memory state backend."""

import logging
import threading

from ..exceptions import (
    LockConflictError,
    SnapshotNotFoundError,
    StaleLockError,
    VersionConflictError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
)
from ..models import LockToken, SnapshotInfo, StateSnapshot

logger = logging.getLogger(__name__)


class MemoryBackend:
    """
    Keeps every workspace history in process memory.

    Useful for tests and for one-shot runs whose state is discarded. All
    operations are serialized by a single mutex, so one instance can be
    shared between event loops and threads.
    """

    def __init__(self) -> None:
        self._histories: dict[str, list[StateSnapshot]] = {}
        self._locks: dict[str, LockToken] = {}
        self._mutex = threading.Lock()

    def _history(self, workspace: str) -> list[StateSnapshot]:
        try:
            return self._histories[workspace]
        except KeyError:
            raise WorkspaceNotFoundError(workspace) from None

    async def list_workspaces(self) -> list[str]:
        with self._mutex:
            return sorted(self._histories)

    async def create_workspace(self, snapshot: StateSnapshot) -> None:
        with self._mutex:
            if snapshot.workspace in self._histories:
                raise WorkspaceExistsError(snapshot.workspace)
            self._histories[snapshot.workspace] = [snapshot]

    def _check_writer(self, workspace: str, lock_id: str, expected_serial: int) -> None:
        history = self._history(workspace)
        lock = self._locks.get(workspace)
        if lock is None or lock.lock_id != lock_id:
            raise StaleLockError(workspace, lock_id)
        if lock.expired():
            raise StaleLockError(workspace, lock_id, "lock has expired")
        head = history[-1].serial
        if head != expected_serial:
            raise VersionConflictError(None, expected_serial, head, workspace=workspace)

    async def delete_workspace(
        self,
        workspace: str,
        *,
        lock_id: str,
        expected_serial: int,
    ) -> None:
        with self._mutex:
            self._check_writer(workspace, lock_id, expected_serial)
            del self._histories[workspace]
            self._locks.pop(workspace, None)

    async def read_snapshot(self, workspace: str, serial: int | None = None) -> StateSnapshot:
        with self._mutex:
            history = self._history(workspace)
            if serial is None:
                return history[-1]
            for snapshot in history:
                if snapshot.serial == serial:
                    return snapshot
            raise SnapshotNotFoundError(workspace, serial)

    async def list_snapshots(self, workspace: str) -> list[SnapshotInfo]:
        with self._mutex:
            return [s.info for s in self._history(workspace)]

    async def write_snapshot(
        self,
        snapshot: StateSnapshot,
        *,
        lock_id: str,
        expected_serial: int,
    ) -> None:
        with self._mutex:
            self._check_writer(snapshot.workspace, lock_id, expected_serial)
            self._histories[snapshot.workspace].append(snapshot)

    async def acquire_lock(self, token: LockToken) -> LockToken:
        with self._mutex:
            self._history(token.workspace)
            current = self._locks.get(token.workspace)
            if current is not None and not current.expired():
                raise LockConflictError(
                    token.workspace, current.holder, current.acquired_at, current.lock_id
                )
            if current is not None:
                logger.warning(
                    "Taking over expired lock %s on workspace %s (held by %s)",
                    current.lock_id,
                    token.workspace,
                    current.holder,
                )
            self._locks[token.workspace] = token
            return token

    async def get_lock(self, workspace: str) -> LockToken | None:
        with self._mutex:
            return self._locks.get(workspace)

    async def release_lock(self, workspace: str, lock_id: str) -> bool:
        with self._mutex:
            current = self._locks.get(workspace)
            if current is None or current.lock_id != lock_id:
                return False
            del self._locks[workspace]
            return True

    async def close(self) -> None:
        pass
