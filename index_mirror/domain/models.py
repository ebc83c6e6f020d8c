"""
Pydantic models for the index mirror.

This module defines all data models used throughout the application, including:
- Process configuration (upstream repository, web server, logging)
- Mirror snapshot state and the scheduled sync task
- Per-request models used by the index file server

All models use Pydantic for validation, serialization, and type safety.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import AsyncIterable, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class RepoConfig(BaseModel):
    """
    Upstream repository settings (the ``[repo]`` table of config.toml).
    """

    git_url: str = Field(
        description="Git URL of the upstream index repository.",
    )
    path: Path = Field(
        description="Local checkout path of the mirror.",
    )
    update_interval: int = Field(
        default=3600,
        ge=1,
        description="Seconds between the starts of two successive refreshes.",
    )
    branch: Optional[str] = Field(
        default=None,
        description="Branch to follow. When unset the remote HEAD is used.",
    )
    ssh_key: Optional[Path] = Field(
        default=None,
        description="Private key passed to ssh for git+ssh remotes.",
    )
    snapshot_dir: Optional[Path] = Field(
        default=None,
        description="Where refreshed snapshot trees are checked out. Defaults to '<path>.snapshots'.",
    )
    git_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Upper bound for a single git command.",
    )

    @field_validator("git_url")
    @classmethod
    def _git_url_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("git_url must not be empty")
        return value

    @field_validator("path", "ssh_key", "snapshot_dir")
    @classmethod
    def _expand_user(cls, value: Optional[Path]) -> Optional[Path]:
        if value is None:
            return None
        return Path(value).expanduser()

    def resolved_snapshot_dir(self) -> Path:
        if self.snapshot_dir is not None:
            return self.snapshot_dir
        return self.path.with_name(self.path.name + ".snapshots")


class WebConfig(BaseModel):
    """
    HTTP listener settings (the ``[web]`` table of config.toml).
    """

    address: str = Field(default="0.0.0.0", description="Bind address.")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port.")
    show_listing: bool = Field(
        default=True,
        description="Render an HTML listing when a directory is requested.",
    )


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if value not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return value


class MirrorConfig(BaseModel):
    """
    Top-level configuration of the mirror process.
    Persisted at: config.toml (or the path in INDEX_MIRROR_CONFIG).
    """

    repo: RepoConfig
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Mirror State Models
# ---------------------------------------------------------------------------


class MirrorState(BaseModel):
    """
    One complete, consistent snapshot of the mirror.

    Instances are frozen: every refresh outcome produces a new MirrorState
    that replaces the current one.
    """

    model_config = ConfigDict(frozen=True)

    root_path: Path = Field(
        description="Absolute path of a fully checked-out tree.",
    )
    revision: str = Field(
        description="Commit hash the tree is checked out at.",
    )
    last_synced_at: datetime = Field(
        description="When the served revision was last confirmed against upstream.",
    )
    last_attempt_at: Optional[datetime] = Field(
        default=None,
        description="When the most recent refresh attempt finished, successful or not.",
    )
    last_error: Optional[str] = Field(
        default=None,
        description="Error of the most recent refresh, if it failed.",
    )
    consecutive_failures: int = Field(
        default=0,
        ge=0,
        description="Number of failed refreshes since the last successful one.",
    )


class SyncTask(BaseModel):
    """
    The periodic refresh job driven by the scheduler.
    """

    interval_seconds: float = Field(gt=0)
    next_run_at: Optional[float] = Field(
        default=None,
        description="Monotonic clock value of the next scheduled start.",
    )
    runs: int = Field(default=0, ge=0)
    skipped_ticks: int = Field(default=0, ge=0)


class MirrorStatus(BaseModel):
    """
    Response body of GET /_mirror/status.
    """

    ready: bool
    state: Optional[MirrorState] = None
    task: Optional[SyncTask] = None


# ---------------------------------------------------------------------------
# Request / Response Models
# ---------------------------------------------------------------------------


class IndexRequest(BaseModel):
    requested_path: str
    if_none_match: Optional[str] = None


@dataclass
class IndexResponse:
    """
    Transport-independent result of IndexFileServer.handle().

    ``body`` is either the full payload or an async iterable of chunks that
    must be consumed (or closed) by the caller.
    """

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Union[bytes, AsyncIterable[bytes]] = b""
