"""Pairing session state machine.

Represents one pairing attempt with validated state transitions and the
single-response guard for the originating HTTP request.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from wapair.pairing.credentials import CredentialStore


class PairingState(Enum):
    """Pairing session states."""

    INITIALIZING = "initializing"
    AWAITING_PAIRING_CODE = "awaiting_pairing_code"
    AWAITING_USER_CONFIRMATION = "awaiting_user_confirmation"
    CONNECTED = "connected"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        """DEPLOYED, FAILED and EXPIRED end the session."""
        return self in TERMINAL_STATES

    @property
    def is_linked(self) -> bool:
        """The device was linked (CONNECTED or any later non-failure state)."""
        return self in (
            PairingState.CONNECTED,
            PairingState.DEPLOYING,
            PairingState.DEPLOYED,
        )


TERMINAL_STATES = frozenset(
    {PairingState.DEPLOYED, PairingState.FAILED, PairingState.EXPIRED}
)

VALID_TRANSITIONS: dict[PairingState, set[PairingState]] = {
    PairingState.INITIALIZING: {
        PairingState.AWAITING_PAIRING_CODE,
        PairingState.FAILED,
        PairingState.EXPIRED,
    },
    PairingState.AWAITING_PAIRING_CODE: {
        PairingState.AWAITING_USER_CONFIRMATION,
        PairingState.FAILED,
        PairingState.EXPIRED,
    },
    PairingState.AWAITING_USER_CONFIRMATION: {
        PairingState.CONNECTED,
        PairingState.EXPIRED,
        PairingState.FAILED,
    },
    PairingState.CONNECTED: {PairingState.DEPLOYING, PairingState.FAILED},
    PairingState.DEPLOYING: {PairingState.DEPLOYED, PairingState.FAILED},
    PairingState.DEPLOYED: set(),
    PairingState.FAILED: set(),
    PairingState.EXPIRED: set(),
}

# Value delivered to the waiting HTTP handler: a code or the error to report
Response = Union[str, Exception]


@dataclass
class PairingSession:
    """Represents one pairing attempt.

    Attributes:
        session_id: Unique session identifier, also the API handle.
        user_id: Caller-supplied user id.
        phone_number: Digits-only phone number.
        credentials: Credential store owned by this session.
        created_at: Unix timestamp when session was created.
        state: Current pairing state.
        pairing_code: Code issued by the WhatsApp client (set once).
        response_sent: Whether the originating request has been answered.
    """

    session_id: str
    user_id: str
    phone_number: str
    credentials: CredentialStore
    created_at: float = field(default_factory=time.time)
    state: PairingState = PairingState.INITIALIZING

    pairing_code: Optional[str] = None
    response_sent: bool = False
    connected_at: Optional[float] = None
    deployed_at: Optional[float] = None
    app_name: Optional[str] = None
    error: Optional[str] = None
    disconnected: bool = False
    client_ready: bool = False
    status: Optional[str] = None  # last status-store string recorded
    code_requested: bool = False

    # Runtime handles, owned by the manager
    client: Optional[Any] = field(default=None, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    connect_task: Optional[asyncio.Task] = field(default=None, repr=False)
    expiry_task: Optional[asyncio.Task] = field(default=None, repr=False)
    deploy_task: Optional[asyncio.Task] = field(default=None, repr=False)
    removal_task: Optional[asyncio.Task] = field(default=None, repr=False)

    _response: Optional[Response] = field(default=None, repr=False)
    _response_ready: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def transition_to(self, new_state: PairingState) -> None:
        """Transition to a new state with validation.

        Args:
            new_state: Target state.

        Raises:
            ValueError: If transition is not valid from current state.
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid transition: {self.state} -> {new_state}")

        self.state = new_state

    def set_pairing_code(self, code: str) -> None:
        """Record the pairing code.

        Raises:
            ValueError: If a code was already recorded.
        """
        if self.pairing_code is not None:
            raise ValueError("Pairing code already set")
        self.pairing_code = code

    def send_response(self, response: Response) -> bool:
        """Deliver the single response for the originating request.

        Args:
            response: Pairing code, or the error to report.

        Returns:
            True if this call delivered the response, False if one was
            already sent.
        """
        if self.response_sent:
            return False
        self.response_sent = True
        self._response = response
        self._response_ready.set()
        return True

    async def wait_response(self) -> Response:
        """Wait until a response has been delivered and return it."""
        await self._response_ready.wait()
        return self._response  # type: ignore[return-value]

    @property
    def connected(self) -> bool:
        """True once linked and not disconnected since."""
        return self.state.is_linked and not self.disconnected

    def cancel_expiry(self) -> None:
        """Cancel the expiry timer if it is still pending."""
        if self.expiry_task and not self.expiry_task.done():
            current = asyncio.current_task()
            if self.expiry_task is not current:
                self.expiry_task.cancel()
        self.expiry_task = None

    def to_dict(self) -> dict[str, Any]:
        """Public view used by status endpoints."""
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "phoneNumber": self.phone_number,
            "state": self.state.value,
            "status": self.status,
            "connected": self.connected,
            "pairingCode": self.pairing_code,
            "appName": self.app_name,
            "error": self.error,
            "createdAt": self.created_at,
            "connectedAt": self.connected_at,
            "deployedAt": self.deployed_at,
        }
