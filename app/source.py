"""Shallow git checkouts of connected repositories."""

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from app.errors import FetchFailed
from config.settings import settings

logger = logging.getLogger(__name__)


class SourceFetcher:
    """Clone a repository into a private temporary directory.

    The caller owns the returned directory and removes it with
    `remove_workdir` once the build attempt is over.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = (base_url or settings.github_url).rstrip("/")
        self.timeout = timeout or settings.clone_timeout_seconds

    def clone_url(self, owner: str, repo: str) -> str:
        return f"{self.base_url}/{owner}/{repo}.git"

    async def fetch(self, owner: str, repo: str, ref: Optional[str] = None) -> Path:
        workdir = Path(tempfile.mkdtemp(prefix=settings.workdir_prefix))
        url = self.clone_url(owner, repo)
        try:
            await self._git("clone", "--depth", "1", "--no-tags", url, str(workdir))
            if ref:
                # A shallow clone only has the default branch; fetch the ref
                # itself so both branch names and commit SHAs resolve.
                await self._git("fetch", "--depth", "1", "origin", ref, cwd=workdir)
                await self._git("checkout", "--detach", "FETCH_HEAD", cwd=workdir)
        except FetchFailed:
            # The directory was never handed out, so it is ours to clean
            remove_workdir(workdir)
            raise

        logger.info(f"Cloned {owner}/{repo}{f' @ {ref}' if ref else ''} -> {workdir}")
        return workdir

    async def _git(self, *args: str, cwd: Optional[Path] = None) -> str:
        cmd = ("git", *args)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except OSError as e:
            raise FetchFailed(f"git unavailable: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise FetchFailed(f"git {args[0]} timed out after {self.timeout}s")

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            logger.error(f"git {args[0]} failed (exit {proc.returncode}): {message}")
            raise FetchFailed(f"git {args[0]} failed: {message}")
        return stdout.decode(errors="replace")


def remove_workdir(workdir: Path):
    """Best-effort recursive removal; failures are logged, never raised."""
    try:
        shutil.rmtree(workdir)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove working directory {workdir}: {e}")

