from typing import Optional

from index_mirror.data.mirror import RepositoryMirror
from index_mirror.data.sync_scheduler import SyncScheduler
from index_mirror.domain.models import MirrorConfig
from index_mirror.services.index_server import IndexFileServer
from index_mirror.storage.git_cli import GitCliTransport
from index_mirror.storage.git_transport import GitTransport

_config: Optional[MirrorConfig] = None
_transport: Optional[GitTransport] = None
_mirror: Optional[RepositoryMirror] = None
_scheduler: Optional[SyncScheduler] = None
_index_server: Optional[IndexFileServer] = None


def configure(config: MirrorConfig, transport: Optional[GitTransport] = None) -> None:
    """
    Install the process-wide configuration. Components are rebuilt lazily.
    """
    global _config, _transport, _mirror, _scheduler, _index_server
    _config = config
    _transport = transport
    _mirror = None
    _scheduler = None
    _index_server = None


def get_config() -> MirrorConfig:
    if _config is None:
        raise RuntimeError("index_mirror has not been configured")
    return _config


def get_transport() -> GitTransport:
    global _transport
    if _transport is None:
        repo = get_config().repo
        _transport = GitCliTransport(timeout=repo.git_timeout_seconds, ssh_key=repo.ssh_key)
    return _transport


def get_mirror() -> RepositoryMirror:
    global _mirror
    if _mirror is None:
        repo = get_config().repo
        _mirror = RepositoryMirror(
            get_transport(),
            branch=repo.branch,
            snapshot_dir=repo.resolved_snapshot_dir(),
        )
    return _mirror


def get_scheduler() -> SyncScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = SyncScheduler(get_mirror(), interval_seconds=get_config().repo.update_interval)
    return _scheduler


def get_index_server() -> IndexFileServer:
    global _index_server
    if _index_server is None:
        _index_server = IndexFileServer(get_mirror(), show_listing=get_config().web.show_listing)
    return _index_server
