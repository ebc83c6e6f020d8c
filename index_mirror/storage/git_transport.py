from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional


class GitTransport(ABC):
    """
    Abstract base class for the version-control operations the mirror needs.
    """

    @abstractmethod
    async def clone(self, url: str, dest: Path) -> None:
        """Clone url into dest. dest must not exist yet."""
        pass

    @abstractmethod
    async def is_repository(self, path: Path) -> bool:
        """Return True if path is the top level of a git checkout."""
        pass

    @abstractmethod
    async def head_revision(self, repo: Path) -> str:
        """Return the commit hash HEAD of repo points at."""
        pass

    @abstractmethod
    async def fetch(self, repo: Path, url: str, branch: Optional[str] = None) -> str:
        """
        Fetch branch (or the remote HEAD when None) from url into repo.
        Returns the fetched commit hash.
        """
        pass

    @abstractmethod
    async def add_worktree(self, repo: Path, dest: Path, revision: str) -> None:
        """Check out revision into a new detached worktree at dest."""
        pass

    @abstractmethod
    async def remove_worktree(self, repo: Path, dest: Path) -> None:
        """Remove the worktree at dest and its registration in repo."""
        pass

    @abstractmethod
    async def prune_worktrees(self, repo: Path) -> None:
        """Drop registrations of worktrees whose directories are gone."""
        pass
