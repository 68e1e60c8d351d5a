"""Publish session credential files to a git repository."""

import asyncio
import logging
import tempfile
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from wapair.config import GithubConfig
from wapair.errors import GitError
from wapair.protocols import CommandExecutorProtocol

logger = logging.getLogger(__name__)


class AsyncCommandExecutor:
    """Execute shell commands asynchronously."""

    async def run(
        self, *args: str, check: bool = True, cwd: Optional[str] = None
    ) -> tuple[bytes, bytes, int]:
        """Run command and return (stdout, stderr, returncode).

        Args:
            *args: Command and arguments to run.
            check: If True, raise GitError on non-zero exit.
            cwd: Working directory for the command.

        Returns:
            Tuple of (stdout, stderr, returncode).

        Raises:
            GitError: If check=True and command fails.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GitError(f"Could not run {args[0]}: {e}") from e
        stdout, stderr = await proc.communicate()
        returncode = proc.returncode or 0

        if check and returncode != 0:
            raise GitError(f"Command failed: {stderr.decode(errors='replace')}")

        return stdout, stderr, returncode


def authenticated_url(repo_url: str, token: Optional[str]) -> str:
    """Embed a token into an https repository URL.

    Args:
        repo_url: Repository URL.
        token: Access token, or None to leave the URL unchanged.

    Returns:
        URL usable by git without a credential prompt.
    """
    if not token:
        return repo_url
    parts = urlsplit(repo_url)
    if parts.scheme != "https":
        return repo_url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(parts._replace(netloc=f"x-access-token:{token}@{host}"))


class GitPublisher:
    """Writes artifacts under sessions/<session_id>/ and pushes them.

    Use dependency injection for the command executor to enable testing.
    """

    def __init__(
        self,
        config: Optional[GithubConfig] = None,
        executor: Optional[CommandExecutorProtocol] = None,
        git_path: str = "git",
    ):
        """Initialize GitPublisher.

        Args:
            config: Repository settings. Publishing is skipped without repo_url.
            executor: Command executor. Defaults to AsyncCommandExecutor.
            git_path: Path to git binary.
        """
        self.config = config or GithubConfig()
        self._executor = executor or AsyncCommandExecutor()
        self._git = git_path

    @property
    def enabled(self) -> bool:
        """True when a repository is configured."""
        return bool(self.config.repo_url)

    async def _run(self, *args: str, cwd: Optional[str] = None) -> bytes:
        stdout, _, _ = await self._executor.run(self._git, *args, check=True, cwd=cwd)
        return stdout

    async def publish(self, session_id: str, artifacts: dict[str, bytes]) -> bool:
        """Commit and push one session's artifacts.

        Args:
            session_id: Session id, used as the target directory name.
            artifacts: Mapping of relative path to content.

        Returns:
            True if a commit was pushed, False if skipped.

        Raises:
            GitError: If any git command fails.
        """
        if not self.enabled:
            logger.debug(f"No repository configured, skipping publish of {session_id}")
            return False

        url = authenticated_url(self.config.repo_url, self.config.token)
        with tempfile.TemporaryDirectory(prefix="wapair-git-") as tmp:
            workdir = Path(tmp) / "repo"
            await self._run(
                "clone",
                "--depth",
                "1",
                "--branch",
                self.config.branch,
                url,
                str(workdir),
            )

            target = workdir / "sessions" / session_id
            paths = self._write_artifacts(target, artifacts)
            if not paths:
                logger.info(f"No artifacts to publish for {session_id}")
                return False

            cwd = str(workdir)
            await self._run("add", "--", *paths, cwd=cwd)
            await self._run(
                "-c",
                f"user.name={self.config.author_name}",
                "-c",
                f"user.email={self.config.author_email}",
                "commit",
                "-m",
                f"Add session {session_id}",
                cwd=cwd,
            )
            await self._run("push", "origin", f"HEAD:{self.config.branch}", cwd=cwd)

        logger.info(f"Published {len(paths)} file(s) for {session_id}")
        return True

    @staticmethod
    def _write_artifacts(target: Path, artifacts: dict[str, bytes]) -> list[str]:
        """Write files under target and return their repo-relative paths."""
        written = []
        for name, data in sorted(artifacts.items()):
            rel = PurePosixPath(name)
            if rel.is_absolute() or ".." in rel.parts:
                raise GitError(f"Invalid artifact path: {name!r}")
            path = target.joinpath(*rel.parts)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            written.append(str(PurePosixPath("sessions", target.name, *rel.parts)))
        return written
