"""
Error taxonomy of the index mirror.

Sync-path errors (acquisition, refresh, git) never reach request handling.
Request-path errors carry the HTTP status they map to.
"""

from __future__ import annotations

from typing import Optional, Sequence


class MirrorError(Exception):
    """Base class for all errors raised by the mirror."""


class ConfigError(MirrorError):
    """The configuration file is missing or invalid."""


class GitCommandError(MirrorError):
    """A git command exited non-zero or timed out."""

    def __init__(self, args: Sequence[str], returncode: Optional[int], stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        if returncode is None:
            message = f"git command timed out: {' '.join(self.command)}"
        else:
            message = f"git command failed ({returncode}): {' '.join(self.command)}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)


class AcquisitionError(MirrorError):
    """The initial local copy could not be established. Fatal at startup."""


class RefreshError(MirrorError):
    """A refresh attempt failed. The previous snapshot stays current."""


class MirrorNotReadyError(MirrorError):
    """The mirror has no snapshot yet (ensure_initialized has not completed)."""


class RequestError(MirrorError):
    status_code: int = 500


class RequestPathError(RequestError):
    """Malformed or escaping request path."""

    status_code = 400


class NotFoundError(RequestError):
    status_code = 404


class ReadError(RequestError):
    """A file exists in the snapshot but could not be read."""

    status_code = 500
