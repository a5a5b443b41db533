"""Local filesystem state backend.

Layout::

    <root>/<workspace>/snapshots/000000000000.json
    <root>/<workspace>/snapshots/000000000001.json
    <root>/<workspace>/lock.json

Every file is written to a temporary name first and then hard-linked into
place, which fails if the target already exists. That makes "create the next
snapshot" and "create the lock file" atomic compare-and-swap operations, so
readers never observe a half-written file.
"""

import asyncio
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path

from ..exceptions import (
    LockConflictError,
    SnapshotNotFoundError,
    StaleLockError,
    VersionConflictError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
)
from ..models import LockToken, SnapshotInfo, StateSnapshot
from ..naming import DEFAULT_STATE_DIR
from ..schema import SERIAL_WIDTH

logger = logging.getLogger(__name__)

SNAPSHOTS_DIR = "snapshots"
LOCK_FILE = "lock.json"


def _write_exclusive(path: Path, content: str) -> bool:
    """Create ``path`` with ``content`` unless it exists. Returns False if it did."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        try:
            os.link(tmp, path)
        except FileExistsError:
            return False
        return True
    finally:
        os.unlink(tmp)


def _write_replace(path: Path, content: str) -> None:
    """Atomically replace ``path`` with ``content``."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class LocalBackend:
    """
    Stores workspace histories as JSON files under a root directory.

    Blocking file I/O runs in worker threads via :func:`asyncio.to_thread`.

    Args:
        root: State directory (default: ``.terraplan`` in the working directory)
    """

    def __init__(self, root: str | os.PathLike[str] | None = None) -> None:
        self.root = Path(root if root is not None else DEFAULT_STATE_DIR)

    def _workspace_dir(self, workspace: str) -> Path:
        return self.root / workspace

    def _snapshots_dir(self, workspace: str) -> Path:
        path = self._workspace_dir(workspace) / SNAPSHOTS_DIR
        if not path.is_dir():
            raise WorkspaceNotFoundError(workspace)
        return path

    def _snapshot_path(self, workspace: str, serial: int) -> Path:
        return self._snapshots_dir(workspace) / f"{serial:0{SERIAL_WIDTH}d}.json"

    def _lock_path(self, workspace: str) -> Path:
        return self._workspace_dir(workspace) / LOCK_FILE

    def _serials(self, workspace: str) -> list[int]:
        serials = []
        for entry in self._snapshots_dir(workspace).iterdir():
            if entry.suffix == ".json" and entry.stem.isdigit():
                serials.append(int(entry.stem))
        return sorted(serials)

    def _head_serial(self, workspace: str) -> int:
        serials = self._serials(workspace)
        if not serials:
            raise WorkspaceNotFoundError(workspace)
        return serials[-1]

    def _load_snapshot(self, workspace: str, serial: int) -> StateSnapshot:
        path = self._snapshot_path(workspace, serial)
        try:
            return StateSnapshot.from_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise SnapshotNotFoundError(workspace, serial) from None

    def _load_lock(self, workspace: str) -> LockToken | None:
        try:
            data = json.loads(self._lock_path(workspace).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        return LockToken.from_dict(data)

    # -------------------------------------------------------------------------
    # Workspaces
    # -------------------------------------------------------------------------

    def _list_workspaces(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name for entry in self.root.iterdir() if (entry / SNAPSHOTS_DIR).is_dir()
        )

    async def list_workspaces(self) -> list[str]:
        return await asyncio.to_thread(self._list_workspaces)

    def _create_workspace(self, snapshot: StateSnapshot) -> None:
        workspace_dir = self._workspace_dir(snapshot.workspace)
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            workspace_dir.mkdir()
        except FileExistsError:
            raise WorkspaceExistsError(snapshot.workspace) from None
        snapshots = workspace_dir / SNAPSHOTS_DIR
        staging = workspace_dir / f".{SNAPSHOTS_DIR}.tmp"
        staging.mkdir()
        _write_exclusive(staging / f"{snapshot.serial:0{SERIAL_WIDTH}d}.json", snapshot.to_json())
        # The workspace becomes visible only once its first snapshot exists
        staging.rename(snapshots)
        logger.debug("Created workspace directory %s", workspace_dir)

    async def create_workspace(self, snapshot: StateSnapshot) -> None:
        await asyncio.to_thread(self._create_workspace, snapshot)

    def _delete_workspace(self, workspace: str, lock_id: str, expected_serial: int) -> None:
        self._check_writer(workspace, lock_id, expected_serial)
        # Move the whole directory out of sight first; a half-finished rmtree
        # must not leave a listable workspace behind.
        graveyard = Path(tempfile.mkdtemp(dir=self.root, prefix=f".{workspace}.deleted."))
        self._workspace_dir(workspace).rename(graveyard / workspace)
        shutil.rmtree(graveyard)

    async def delete_workspace(
        self,
        workspace: str,
        *,
        lock_id: str,
        expected_serial: int,
    ) -> None:
        await asyncio.to_thread(self._delete_workspace, workspace, lock_id, expected_serial)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def _read_snapshot(self, workspace: str, serial: int | None) -> StateSnapshot:
        if serial is None:
            serial = self._head_serial(workspace)
        return self._load_snapshot(workspace, serial)

    async def read_snapshot(self, workspace: str, serial: int | None = None) -> StateSnapshot:
        return await asyncio.to_thread(self._read_snapshot, workspace, serial)

    def _list_snapshots(self, workspace: str) -> list[SnapshotInfo]:
        return [self._load_snapshot(workspace, s).info for s in self._serials(workspace)]

    async def list_snapshots(self, workspace: str) -> list[SnapshotInfo]:
        return await asyncio.to_thread(self._list_snapshots, workspace)

    def _check_writer(self, workspace: str, lock_id: str, expected_serial: int) -> None:
        head = self._head_serial(workspace)
        lock = self._load_lock(workspace)
        if lock is None or lock.lock_id != lock_id:
            raise StaleLockError(workspace, lock_id)
        if lock.expired():
            raise StaleLockError(workspace, lock_id, "lock has expired")
        if head != expected_serial:
            raise VersionConflictError(None, expected_serial, head, workspace=workspace)

    def _write_snapshot(self, snapshot: StateSnapshot, lock_id: str, expected_serial: int) -> None:
        workspace = snapshot.workspace
        self._check_writer(workspace, lock_id, expected_serial)
        path = self._snapshot_path(workspace, snapshot.serial)
        if not _write_exclusive(path, snapshot.to_json()):
            raise VersionConflictError(
                None, expected_serial, self._head_serial(workspace), workspace=workspace
            )
        logger.debug("Wrote %s", path)

    async def write_snapshot(
        self,
        snapshot: StateSnapshot,
        *,
        lock_id: str,
        expected_serial: int,
    ) -> None:
        await asyncio.to_thread(self._write_snapshot, snapshot, lock_id, expected_serial)

    # -------------------------------------------------------------------------
    # Locks
    # -------------------------------------------------------------------------

    def _acquire_lock(self, token: LockToken) -> LockToken:
        self._snapshots_dir(token.workspace)
        path = self._lock_path(token.workspace)
        content = json.dumps(token.to_dict(), sort_keys=True)
        if _write_exclusive(path, content):
            return token

        current = self._load_lock(token.workspace)
        if current is None:
            # Released between our attempt and the read
            if _write_exclusive(path, content):
                return token
            current = self._load_lock(token.workspace)
        if current is not None and not current.expired():
            raise LockConflictError(
                token.workspace, current.holder, current.acquired_at, current.lock_id
            )

        logger.warning(
            "Taking over expired lock on workspace %s (held by %s)",
            token.workspace,
            current.holder if current else "unknown",
        )
        _write_replace(path, content)
        # Another process may have taken over at the same moment; last writer wins
        winner = self._load_lock(token.workspace)
        if winner is None or winner.lock_id != token.lock_id:
            raise LockConflictError(
                token.workspace,
                winner.holder if winner else None,
                winner.acquired_at if winner else None,
                winner.lock_id if winner else None,
            )
        return token

    async def acquire_lock(self, token: LockToken) -> LockToken:
        return await asyncio.to_thread(self._acquire_lock, token)

    async def get_lock(self, workspace: str) -> LockToken | None:
        return await asyncio.to_thread(self._load_lock, workspace)

    def _release_lock(self, workspace: str, lock_id: str) -> bool:
        current = self._load_lock(workspace)
        if current is None or current.lock_id != lock_id:
            return False
        self._lock_path(workspace).unlink(missing_ok=True)
        return True

    async def release_lock(self, workspace: str, lock_id: str) -> bool:
        return await asyncio.to_thread(self._release_lock, workspace, lock_id)

    async def close(self) -> None:
        pass
