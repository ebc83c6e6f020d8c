"""Pytest fixtures for the index mirror tests."""

import asyncio
import shutil
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from index_mirror.data.mirror import RepositoryMirror
from index_mirror.domain.errors import GitCommandError
from index_mirror.domain.models import MirrorConfig
from index_mirror.services.index_server import IndexFileServer
from index_mirror.storage.git_transport import GitTransport

UPSTREAM_URL = "https://example.invalid/index.git"

REVISION_A = "a" * 40
REVISION_B = "b" * 40
REVISION_C = "c" * 40

FILES_A = {
    "config.json": b'{"dl": "https://static.crates.io/crates", "api": "https://crates.io"}\n',
    "3/s/syn": b'{"name":"syn","vers":"1.0.0"}\n',
    "se/rd/serde": b'{"name":"serde","vers":"1.0.0"}\n',
}
FILES_B = {
    "config.json": b'{"dl": "https://static.crates.io/crates", "api": "https://crates.io", "rev": "b"}\n',
    "3/s/syn": b'{"name":"syn","vers":"1.0.0"}\n{"name":"syn","vers":"2.0.0"}\n',
    "se/rd/serde": b'{"name":"serde","vers":"1.0.0"}\n{"name":"serde","vers":"1.0.1"}\n',
}
FILES_C = {
    "config.json": b'{"dl": "https://static.crates.io/crates", "api": "https://crates.io", "rev": "c"}\n',
    "3/s/syn": b'{"name":"syn","vers":"3.0.0"}\n',
    "se/rd/serde": b'{"name":"serde","vers":"2.0.0"}\n',
}


class FakeGitTransport(GitTransport):
    """
    In-memory upstream: each revision is a mapping of relative path -> bytes.

    Checkouts write files one by one and can be paused halfway through via
    ``checkout_gate`` to observe readers during an in-progress refresh.
    """

    def __init__(self):
        self.revisions: Dict[str, Dict[str, bytes]] = {}
        self.head: Optional[str] = None
        self.fail_clone: Optional[Exception] = None
        self.fail_fetch: Optional[Exception] = None
        self.fail_worktree: Optional[Exception] = None
        self.checkout_gate: Optional[asyncio.Event] = None
        self.checkout_paused = asyncio.Event()
        self.calls: List[str] = []
        self.removed: List[Path] = []

    def publish(self, revision: str, files: Dict[str, bytes]) -> None:
        self.revisions[revision] = dict(files)
        self.head = revision

    @staticmethod
    def _write(dest: Path, relative: str, data: bytes) -> None:
        path = dest / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def clone(self, url: str, dest: Path) -> None:
        self.calls.append("clone")
        if self.fail_clone is not None:
            dest.mkdir(parents=True)
            (dest / "half-written").write_bytes(b"")
            raise self.fail_clone
        dest.mkdir(parents=True)
        (dest / ".git").mkdir()
        (dest / ".git" / "HEAD").write_text(self.head)
        for relative, data in self.revisions[self.head].items():
            self._write(dest, relative, data)

    async def is_repository(self, path: Path) -> bool:
        return (path / ".git").is_dir()

    async def head_revision(self, repo: Path) -> str:
        return (repo / ".git" / "HEAD").read_text().strip()

    async def fetch(self, repo: Path, url: str, branch: Optional[str] = None) -> str:
        self.calls.append("fetch")
        if self.fail_fetch is not None:
            raise self.fail_fetch
        return self.head

    async def add_worktree(self, repo: Path, dest: Path, revision: str) -> None:
        self.calls.append("add_worktree")
        dest.mkdir(parents=True)
        items = list(self.revisions[revision].items())
        half = len(items) // 2
        for relative, data in items[:half]:
            self._write(dest, relative, data)
        if self.checkout_gate is not None:
            self.checkout_paused.set()
            await self.checkout_gate.wait()
        if self.fail_worktree is not None:
            raise self.fail_worktree
        for relative, data in items[half:]:
            self._write(dest, relative, data)
        (dest / ".git").write_text(f"gitdir: {repo}/.git/worktrees/{dest.name}\n")

    async def remove_worktree(self, repo: Path, dest: Path) -> None:
        self.removed.append(dest)
        if dest.exists():
            shutil.rmtree(dest)

    async def prune_worktrees(self, repo: Path) -> None:
        self.calls.append("prune")


def fetch_failure() -> GitCommandError:
    return GitCommandError(["git", "fetch", UPSTREAM_URL], 128, "fatal: unable to access")


@pytest.fixture
def transport() -> FakeGitTransport:
    fake = FakeGitTransport()
    fake.publish(REVISION_A, FILES_A)
    return fake


@pytest.fixture
def local_path(tmp_path: Path) -> Path:
    return tmp_path / "mirror" / "crates.io-index"


@pytest.fixture
def mirror(transport: FakeGitTransport) -> RepositoryMirror:
    return RepositoryMirror(transport)


@pytest_asyncio.fixture
async def ready_mirror(mirror: RepositoryMirror, local_path: Path) -> RepositoryMirror:
    await mirror.ensure_initialized(UPSTREAM_URL, local_path)
    return mirror


@pytest.fixture
def index_server(ready_mirror: RepositoryMirror) -> IndexFileServer:
    return IndexFileServer(ready_mirror)


@pytest.fixture
def mirror_config(local_path: Path) -> MirrorConfig:
    return MirrorConfig(
        repo={"git_url": UPSTREAM_URL, "path": str(local_path), "update_interval": 3600},
        web={"address": "127.0.0.1", "port": 8080},
    )


@pytest_asyncio.fixture
async def app(mirror_config: MirrorConfig, transport: FakeGitTransport):
    """FastAPI application with an initialized mirror and no running scheduler."""
    from index_mirror.core import dependencies
    from index_mirror.main import create_app

    app = create_app(mirror_config, transport=transport)
    await dependencies.get_mirror().ensure_initialized(mirror_config.repo.git_url, mirror_config.repo.path)
    return app


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def read_body(response) -> bytes:
    if isinstance(response.body, bytes):
        return response.body
    chunks = []
    async for chunk in response.body:
        chunks.append(chunk)
    return b"".join(chunks)
