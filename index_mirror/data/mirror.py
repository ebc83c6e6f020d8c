"""
Local copy of the upstream index repository.

The mirror keeps one immutable MirrorState as "current". The initial snapshot
is the clone itself; every refresh that brings a new revision checks it out
into a fresh worktree under the snapshot directory and only then swaps the
current reference, so readers always see either the old or the new tree.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from index_mirror.domain.errors import (
    AcquisitionError,
    GitCommandError,
    MirrorNotReadyError,
    RefreshError,
)
from index_mirror.domain.models import MirrorState
from index_mirror.storage.git_transport import GitTransport

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotLease:
    """
    Borrowed reference to one MirrorState for the duration of a request.

    While at least one lease is held, a retired snapshot tree is not deleted.
    """

    def __init__(self, mirror: "RepositoryMirror", state: MirrorState):
        self._mirror = mirror
        self.state = state
        self._released = False

    @property
    def root(self) -> Path:
        return self.state.root_path

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._mirror._release(self.state.root_path)

    def __enter__(self) -> "SnapshotLease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class RepositoryMirror:
    """
    Owns the on-disk copy of the upstream repository and its MirrorState.

    All methods must be called from the event loop thread; the current state
    is swapped with a single assignment and read without locking.
    """

    def __init__(
        self,
        transport: GitTransport,
        branch: Optional[str] = None,
        snapshot_dir: Optional[Path] = None,
    ):
        self.transport = transport
        self.branch = branch
        self.git_url: Optional[str] = None
        self.local_path: Optional[Path] = None
        # Worktrees are added with cwd=<clone>, so a relative path would land inside it.
        self._snapshot_dir: Optional[Path] = None
        if snapshot_dir is not None:
            self._snapshot_dir = Path(snapshot_dir).expanduser().absolute()

        self._state: Optional[MirrorState] = None
        self._lock = asyncio.Lock()
        self._leases: Dict[Path, int] = {}
        self._retired: List[Path] = []

    # ========================================================================
    # Read side
    # ========================================================================

    @property
    def is_ready(self) -> bool:
        return self._state is not None

    @property
    def snapshot_dir(self) -> Path:
        if self._snapshot_dir is not None:
            return self._snapshot_dir
        if self.local_path is None:
            raise MirrorNotReadyError("Mirror has not been initialized")
        return self.local_path.with_name(self.local_path.name + ".snapshots")

    def current_state(self) -> MirrorState:
        state = self._state
        if state is None:
            raise MirrorNotReadyError("Mirror has not been initialized")
        return state

    def current_root(self) -> Path:
        return self.current_state().root_path

    def lease(self) -> SnapshotLease:
        """
        Pin the current snapshot. Callers must release() the lease.
        """
        state = self.current_state()
        self._leases[state.root_path] = self._leases.get(state.root_path, 0) + 1
        return SnapshotLease(self, state)

    def _release(self, root: Path) -> None:
        count = self._leases.get(root, 0) - 1
        if count > 0:
            self._leases[root] = count
        else:
            self._leases.pop(root, None)

    def active_leases(self, root: Optional[Path] = None) -> int:
        if root is None:
            return sum(self._leases.values())
        return self._leases.get(root, 0)

    # ========================================================================
    # Acquisition
    # ========================================================================

    async def ensure_initialized(self, git_url: str, local_path: Path) -> MirrorState:
        """
        Make sure a local copy exists at local_path and load it as the current snapshot.

        Reuses an existing checkout, clones when the path is missing or empty.
        Safe to call on every startup.
        """
        async with self._lock:
            if self._state is not None:
                return self._state

            local_path = Path(local_path).expanduser().absolute()
            self.git_url = git_url
            self.local_path = local_path

            if local_path.exists() and not local_path.is_dir():
                raise AcquisitionError(f"{local_path} exists and is not a directory")

            if local_path.is_dir() and any(local_path.iterdir()):
                if not await self.transport.is_repository(local_path):
                    raise AcquisitionError(f"{local_path} is not empty and is not a git checkout")
                logger.info(f"Using existing directory at {local_path}")
            else:
                logger.info(f"Cloning repository {git_url} into {local_path}...")
                await self._clone(git_url, local_path)

            try:
                revision = await self.transport.head_revision(local_path)
            except GitCommandError as e:
                raise AcquisitionError(f"Cannot read HEAD of {local_path}: {e}") from e

            await self._clear_stale_snapshots()

            now = _utcnow()
            self._state = MirrorState(
                root_path=local_path,
                revision=revision,
                last_synced_at=now,
                last_attempt_at=now,
            )
            logger.info(f"Mirror ready at revision {revision}")
            return self._state

    async def _clone(self, git_url: str, local_path: Path) -> None:
        # Clone next to the target and rename into place so an interrupted
        # clone never leaves a half-populated checkout at local_path.
        staging = local_path.with_name(local_path.name + ".partial")
        try:
            if staging.exists():
                await asyncio.to_thread(shutil.rmtree, staging)
            staging.parent.mkdir(parents=True, exist_ok=True)
            await self.transport.clone(git_url, staging)
            if local_path.exists():
                local_path.rmdir()
            staging.rename(local_path)
        except (GitCommandError, OSError) as e:
            if staging.exists():
                await asyncio.to_thread(shutil.rmtree, staging, True)
            raise AcquisitionError(f"Failed to clone {git_url} into {local_path}: {e}") from e

    async def _clear_stale_snapshots(self) -> None:
        snapshot_dir = self.snapshot_dir
        if snapshot_dir.is_dir():
            for child in snapshot_dir.iterdir():
                logger.info(f"Removing stale snapshot {child}")
                await asyncio.to_thread(shutil.rmtree, child, True)
        try:
            await self.transport.prune_worktrees(self.local_path)
        except GitCommandError as e:
            logger.warning(f"Failed to prune stale worktrees: {e}")

    # ========================================================================
    # Refresh
    # ========================================================================

    async def refresh(self) -> MirrorState:
        """
        Fetch upstream and make the latest revision the current snapshot.

        On failure the previous snapshot stays current, the error is recorded
        in MirrorState.last_error and RefreshError is raised to the caller.
        """
        async with self._lock:
            previous = self.current_state()
            logger.info(f"Pulling repository updates from {self.git_url}...")

            try:
                revision = await self.transport.fetch(self.local_path, self.git_url, self.branch)
                if revision == previous.revision:
                    logger.info(f"[{self.git_url}] Already up-to-date at {revision}")
                    root = previous.root_path
                else:
                    root = await self._checkout_snapshot(revision)
                    logger.info(f"[{self.git_url}] Updated {previous.revision} -> {revision}")
            except (GitCommandError, OSError) as e:
                self._state = previous.model_copy(
                    update={
                        "last_attempt_at": _utcnow(),
                        "last_error": str(e),
                        "consecutive_failures": previous.consecutive_failures + 1,
                    }
                )
                raise RefreshError(f"Refresh of {self.git_url} failed: {e}") from e

            now = _utcnow()
            self._state = MirrorState(
                root_path=root,
                revision=revision,
                last_synced_at=now,
                last_attempt_at=now,
            )
            if root != previous.root_path:
                self._retire(previous.root_path)
            await self._reap_retired()
            return self._state

    async def _checkout_snapshot(self, revision: str) -> Path:
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        dest = self.snapshot_dir / f"{revision[:12]}-{uuid.uuid4().hex[:8]}"
        try:
            await self.transport.add_worktree(self.local_path, dest, revision)
        except Exception:
            await self._discard(dest)
            raise
        return dest

    def _retire(self, root: Path) -> None:
        # The clone itself is the repository; it is never deleted.
        if root == self.local_path:
            return
        self._retired.append(root)

    async def _reap_retired(self) -> None:
        for root in list(self._retired):
            if self._leases.get(root, 0) > 0:
                continue
            self._retired.remove(root)
            await self._discard(root)
            logger.info(f"Removed retired snapshot {root}")

    async def _discard(self, root: Path) -> None:
        try:
            await self.transport.remove_worktree(self.local_path, root)
        except (GitCommandError, OSError) as e:
            logger.warning(f"Failed to remove snapshot {root}: {e}")

    @property
    def retired_snapshots(self) -> List[Path]:
        return list(self._retired)
