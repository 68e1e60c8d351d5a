"""Protocols and event types for wapair collaborators."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol


# ============================================================================
# WhatsApp client
# ============================================================================


@dataclass(frozen=True)
class ConnectionUpdate:
    """Connection-state change emitted by a WhatsApp client.

    Attributes:
        connection: "connecting", "open", "close" or None for
            updates that only carry other fields.
        ready: Client is ready to accept a pairing-code request.
        reason: Optional disconnect reason.
    """

    connection: Optional[str] = None
    ready: bool = False
    reason: Optional[str] = None


UpdateCallback = Callable[[ConnectionUpdate], Awaitable[None]]
CredentialsCallback = Callable[[dict[str, bytes]], Awaitable[None]]


class WhatsAppClientProtocol(Protocol):
    """A live connection to the WhatsApp multi-device client."""

    async def request_pairing_code(self, phone_number: str) -> str:
        """Request a pairing code for the phone number."""
        ...

    async def send_message(self, text: str) -> None:
        """Send a text message to the linked account itself."""
        ...

    async def close(self) -> None:
        """Close the connection and stop emitting events."""
        ...


class ClientFactoryProtocol(Protocol):
    """Opens WhatsApp client connections (DI for testing)."""

    async def connect(
        self,
        session_id: str,
        credentials: Any,
        on_update: UpdateCallback,
        on_credentials: CredentialsCallback,
    ) -> WhatsAppClientProtocol:
        """Open a connection bound to a credential store."""
        ...


# ============================================================================
# Deploy pipeline
# ============================================================================


@dataclass(frozen=True)
class DeployResult:
    """Outcome of a successful deploy handoff."""

    app_name: str
    status: str = "deployed"


class DeployPipelineProtocol(Protocol):
    """Persists credential artifacts and triggers a platform build."""

    async def submit(
        self,
        session_id: str,
        artifacts: dict[str, bytes],
        metadata: dict[str, str],
    ) -> DeployResult:
        """Submit artifacts. Raises DeployError on failure."""
        ...


# ============================================================================
# Status store
# ============================================================================


@dataclass
class StatusRecord:
    """Durable user/session status row."""

    user_id: str
    phone_number: str
    session_id: str
    status: str = "pending"
    pairing_code: Optional[str] = None
    app_name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    connected_at: Optional[datetime] = None
    deployed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "user_id": self.user_id,
            "phone_number": self.phone_number,
            "session_id": self.session_id,
            "status": self.status,
            "pairing_code": self.pairing_code,
            "app_name": self.app_name,
            "created_at": self.created_at.isoformat(),
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "deployed_at": self.deployed_at.isoformat() if self.deployed_at else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "StatusRecord":
        """Create from dict."""

        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            user_id=d["user_id"],
            phone_number=d["phone_number"],
            session_id=d["session_id"],
            status=d.get("status", "pending"),
            pairing_code=d.get("pairing_code"),
            app_name=d.get("app_name"),
            created_at=_dt(d.get("created_at")) or datetime.now(),
            connected_at=_dt(d.get("connected_at")),
            deployed_at=_dt(d.get("deployed_at")),
        )


class StatusStoreProtocol(Protocol):
    """Side-effecting sink for status records."""

    async def insert(self, record: StatusRecord) -> None:
        """Insert a new record."""
        ...

    async def update(self, user_id: str, **fields: Any) -> None:
        """Update fields of the record for user_id."""
        ...

    async def get_by_user(self, user_id: str) -> Optional[StatusRecord]:
        """Get record by user id."""
        ...

    async def get_by_session(self, session_id: str) -> Optional[StatusRecord]:
        """Get record by session id."""
        ...

    async def list_recent(self, limit: int = 50) -> list[StatusRecord]:
        """List records, newest first."""
        ...

    async def delete_older_than(self, days: int) -> int:
        """Delete non-deployed records older than days. Returns count."""
        ...


# ============================================================================
# Subprocess execution
# ============================================================================


class CommandExecutorProtocol(Protocol):
    """Protocol for executing shell commands (DI for testing)."""

    async def run(
        self, *args: str, check: bool = True, cwd: Optional[str] = None
    ) -> tuple[bytes, bytes, int]:
        """Run command and return (stdout, stderr, returncode)."""
        ...
