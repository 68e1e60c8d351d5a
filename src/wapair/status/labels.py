"""Status strings used at the status-store boundary."""

from enum import Enum
from typing import Optional

# Keyed by PairingState value
STATE_STATUS = {
    "initializing": "pairing",
    "awaiting_pairing_code": "pairing",
    "awaiting_user_confirmation": "waiting_for_pairing",
    "connected": "connected",
    "deploying": "deploying",
    "deployed": "deployed",
    "failed": "failed",
    "expired": "expired",
}

DISPLAY_STATUS = {
    "pairing": "Requesting a pairing code...",
    "waiting_for_user": "Waiting for you to enter the pairing code in WhatsApp",
    "waiting_for_pairing": "Waiting for pairing",
    "connecting": "Connecting to WhatsApp...",
    "connected": "Paired successfully! Deploying bot...",
    "deploying": "Deploying to Heroku...",
    "deployed": "Bot deployed and ready!",
    "deployment_failed": "Deployment failed - please contact support",
    "disconnected": "WhatsApp connection closed",
    "failed": "Failed - please try again",
    "expired": "Pairing code expired",
}


def status_for_state(state: Enum) -> str:
    """Map a PairingState to its status-store string."""
    return STATE_STATUS[state.value]


def display_status(status: Optional[str]) -> Optional[str]:
    """Human-readable text for a status string (unknown strings pass through)."""
    if status is None:
        return None
    return DISPLAY_STATUS.get(status, status)
