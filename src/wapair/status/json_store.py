"""Status records persisted to a JSON file."""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from wapair.errors import StatusStoreError
from wapair.protocols import StatusRecord

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "pairing_code",
        "app_name",
        "session_id",
        "phone_number",
        "connected_at",
        "deployed_at",
    }
)


class NullStatusStore:
    """Status store that records nothing."""

    async def insert(self, record: StatusRecord) -> None:
        pass

    async def update(self, user_id: str, **fields: Any) -> None:
        pass

    async def get_by_user(self, user_id: str) -> Optional[StatusRecord]:
        return None

    async def get_by_session(self, session_id: str) -> Optional[StatusRecord]:
        return None

    async def list_recent(self, limit: int = 50) -> list[StatusRecord]:
        return []

    async def delete_older_than(self, days: int) -> int:
        return 0


class JsonStatusStore:
    """Handles loading and saving status records to JSON.

    One record per user id; inserting for a known user replaces the
    previous record. Uses atomic writes to prevent corruption.
    """

    def __init__(self, path: Path | str):
        """Initialize store.

        Args:
            path: Path to JSON file.
        """
        self._path = Path(path).expanduser()
        self._records: dict[str, StatusRecord] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    def _atomic_write(self, content: str) -> None:
        """Write atomically via temp file and rename."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(".tmp")
        temp_path.write_text(content)
        temp_path.replace(self._path)

    def _load_sync(self) -> dict[str, StatusRecord]:
        """Synchronous load implementation."""
        if not self._path.exists():
            return {}

        try:
            data = json.loads(self._path.read_text())
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in status file: {e}")
            return {}
        except OSError as e:
            raise StatusStoreError(f"Failed to read status file: {e}") from e

        records = {}
        for item in data.get("users", []):
            try:
                record = StatusRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid status entry: {e}")
                continue
            records[record.user_id] = record

        logger.debug(f"Loaded {len(records)} status records from {self._path}")
        return records

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._records = await asyncio.to_thread(self._load_sync)
            self._loaded = True

    async def _save(self) -> None:
        content = json.dumps(
            {"users": [r.to_dict() for r in self._records.values()]}, indent=2
        )
        try:
            await asyncio.to_thread(self._atomic_write, content)
        except OSError as e:
            raise StatusStoreError(f"Failed to write status file: {e}") from e

    async def insert(self, record: StatusRecord) -> None:
        """Insert or replace the record for record.user_id."""
        async with self._lock:
            await self._ensure_loaded()
            self._records[record.user_id] = record
            await self._save()

    async def update(self, user_id: str, **fields: Any) -> None:
        """Update fields of an existing record.

        Raises:
            StatusStoreError: If a field name is unknown.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise StatusStoreError(f"Unknown status fields: {sorted(unknown)}")

        async with self._lock:
            await self._ensure_loaded()
            record = self._records.get(user_id)
            if record is None:
                logger.debug(f"No status record for {user_id}")
                return
            for name, value in fields.items():
                setattr(record, name, value)
            await self._save()

    async def get_by_user(self, user_id: str) -> Optional[StatusRecord]:
        async with self._lock:
            await self._ensure_loaded()
            return self._records.get(user_id)

    async def get_by_session(self, session_id: str) -> Optional[StatusRecord]:
        async with self._lock:
            await self._ensure_loaded()
            for record in self._records.values():
                if record.session_id == session_id:
                    return record
            return None

    async def list_recent(self, limit: int = 50) -> list[StatusRecord]:
        """List records, newest first."""
        async with self._lock:
            await self._ensure_loaded()
            records = sorted(
                self._records.values(), key=lambda r: r.created_at, reverse=True
            )
            return records[:limit]

    async def delete_older_than(self, days: int) -> int:
        """Delete non-deployed records created more than days ago."""
        cutoff = datetime.now() - timedelta(days=days)
        async with self._lock:
            await self._ensure_loaded()
            stale = [
                user_id
                for user_id, record in self._records.items()
                if record.created_at < cutoff and record.status != "deployed"
            ]
            for user_id in stale:
                del self._records[user_id]
            if stale:
                await self._save()
            return len(stale)
