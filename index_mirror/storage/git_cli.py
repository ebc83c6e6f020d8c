import asyncio
import logging
import os
import shlex
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from index_mirror.domain.errors import GitCommandError
from index_mirror.storage.git_transport import GitTransport

logger = logging.getLogger(__name__)


class GitCliTransport(GitTransport):
    """
    GitTransport backed by the ``git`` executable, run as asyncio subprocesses.
    """

    def __init__(
        self,
        git_executable: str = "git",
        timeout: float = 600.0,
        ssh_key: Optional[Path] = None,
    ):
        self.git_executable = git_executable
        self.timeout = timeout
        self.ssh_key = ssh_key

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        # Never block on an interactive credential prompt.
        env["GIT_TERMINAL_PROMPT"] = "0"
        if self.ssh_key is not None:
            key = shlex.quote(str(self.ssh_key))
            env["GIT_SSH_COMMAND"] = f"ssh -i {key} -o IdentitiesOnly=yes -o BatchMode=yes"
        return env

    async def _run(self, args: List[str], cwd: Optional[Path] = None) -> str:
        command = [self.git_executable, *args]
        logger.debug(f"Running {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd is not None else None,
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GitCommandError(command, -1, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            # git may exit right at the deadline.
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            await process.wait()
            raise GitCommandError(command, None)

        if process.returncode != 0:
            raise GitCommandError(command, process.returncode, stderr.decode("utf-8", "replace"))
        return stdout.decode("utf-8", "replace").strip()

    async def clone(self, url: str, dest: Path) -> None:
        await self._run(["clone", "--quiet", url, str(dest)])

    async def is_repository(self, path: Path) -> bool:
        if not (path / ".git").exists():
            return False
        try:
            top = await self._run(["rev-parse", "--show-toplevel"], cwd=path)
        except GitCommandError:
            return False
        return Path(top).resolve() == path.resolve()

    async def head_revision(self, repo: Path) -> str:
        return await self._run(["rev-parse", "--verify", "HEAD^{commit}"], cwd=repo)

    async def fetch(self, repo: Path, url: str, branch: Optional[str] = None) -> str:
        # Fetching by URL (not by remote name) keeps working when the
        # configured URL changes between runs.
        await self._run(["fetch", "--quiet", "--no-tags", url, branch or "HEAD"], cwd=repo)
        return await self._run(["rev-parse", "--verify", "FETCH_HEAD^{commit}"], cwd=repo)

    async def add_worktree(self, repo: Path, dest: Path, revision: str) -> None:
        await self._run(
            ["worktree", "add", "--quiet", "--detach", str(dest.absolute()), revision],
            cwd=repo,
        )

    async def remove_worktree(self, repo: Path, dest: Path) -> None:
        try:
            await self._run(["worktree", "remove", "--force", str(dest.absolute())], cwd=repo)
        except GitCommandError as e:
            # Not registered (e.g. a half-created tree): fall back to deleting it.
            logger.debug(f"git worktree remove failed for {dest}: {e}")
            if dest.exists():
                await asyncio.to_thread(shutil.rmtree, dest)
            await self.prune_worktrees(repo)

    async def prune_worktrees(self, repo: Path) -> None:
        await self._run(["worktree", "prune"], cwd=repo)
