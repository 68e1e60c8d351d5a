"""Per-session credential-state storage.

This module provides:
- CredentialStore: Directory holding one session's auth-state files
- CredentialRoot: Provisions credential stores under a base directory

Security features:
- File permissions (600 for files, 700 for directories)
- Session id and file name validation (prevent path traversal)
"""

import logging
import os
import shutil
from pathlib import Path, PurePosixPath

from wapair.errors import StorageError
from wapair.validation import is_valid_session_id

__all__ = [
    "CredentialRoot",
    "CredentialStore",
    "StorageError",
]

logger = logging.getLogger(__name__)


class CredentialStore:
    """Auth-state files produced by the WhatsApp client for one session.

    The owning session holds the store exclusively until the artifacts are
    handed to the deploy pipeline; after that only release() is called on it.

    Attributes:
        session_id: Owning session id.
        path: Directory holding the files.
        handed_off: True once artifacts were given to the deploy pipeline.
    """

    def __init__(self, session_id: str, path: Path) -> None:
        self.session_id = session_id
        self.path = Path(path)
        self.handed_off = False

    def _resolve(self, name: str) -> Path:
        """Resolve a relative file name inside the store.

        Raises:
            StorageError: If the name escapes the store directory.
        """
        rel = PurePosixPath(name)
        if not name or rel.is_absolute() or ".." in rel.parts:
            raise StorageError(f"Invalid credential file name: {name!r}")
        return self.path.joinpath(*rel.parts)

    @property
    def exists(self) -> bool:
        """True while the directory is on disk."""
        return self.path.is_dir()

    def write(self, name: str, data: bytes) -> None:
        """Write one credential file with owner-only permissions.

        Args:
            name: Relative file name (may include subdirectories).
            data: File content.
        """
        target = self._resolve(name)
        target.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)

    def write_many(self, files: dict[str, bytes]) -> None:
        """Write several credential files."""
        for name, data in files.items():
            self.write(name, data)

    def read_all(self) -> dict[str, bytes]:
        """Read every file in the store.

        Returns:
            Mapping of POSIX-style relative path to content.
        """
        if not self.exists:
            return {}
        artifacts = {}
        for file in sorted(self.path.rglob("*")):
            if file.is_file():
                rel = file.relative_to(self.path).as_posix()
                artifacts[rel] = file.read_bytes()
        return artifacts

    def release(self) -> bool:
        """Delete the store directory.

        Returns:
            True if something was deleted, False if already gone.
        """
        if not self.exists:
            return False
        shutil.rmtree(self.path, ignore_errors=True)
        logger.debug(f"Released credentials for {self.session_id}")
        return True


class CredentialRoot:
    """Base directory that holds one credential store per session."""

    def __init__(self, directory: Path) -> None:
        """Initialize root.

        Creates directory if it doesn't exist, with secure permissions.

        Args:
            directory: Base directory path.
        """
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        os.chmod(self.directory, 0o700)

    def provision(self, session_id: str) -> CredentialStore:
        """Create an empty credential store for a session.

        Raises:
            StorageError: If session id is unsafe or the directory exists.
        """
        if not is_valid_session_id(session_id):
            raise StorageError(f"Invalid session ID: {session_id}")

        path = self.directory / session_id
        try:
            path.mkdir(mode=0o700)
        except FileExistsError as e:
            raise StorageError(f"Credential store already exists: {session_id}") from e
        return CredentialStore(session_id, path)
