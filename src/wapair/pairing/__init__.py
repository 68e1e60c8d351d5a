"""Pairing module for wapair.

Provides the pairing-session lifecycle:
- Session state machine and single-response guard
- Session registry
- Per-session credential stores
- Pairing manager (code request, expiry, deploy handoff)
"""

from .credentials import CredentialRoot, CredentialStore
from .pairing_manager import PairingManager
from .registry import SessionRegistry
from .session import PairingSession, PairingState

__all__ = [
    "CredentialRoot",
    "CredentialStore",
    "PairingManager",
    "PairingSession",
    "PairingState",
    "SessionRegistry",
]
