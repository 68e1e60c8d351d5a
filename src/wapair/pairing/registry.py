"""Registry of in-flight pairing sessions."""

from typing import Optional

from wapair.pairing.session import PairingSession


class SessionRegistry:
    """Registry for pairing sessions, keyed by session id.

    Owned by the PairingManager; every access happens on the event loop
    thread. This is a simple state container - lifecycle logic belongs
    to the manager.
    """

    def __init__(self):
        """Initialize empty registry."""
        self._sessions: dict[str, PairingSession] = {}

    def add(self, session: PairingSession) -> None:
        """Add a session to the registry.

        Raises:
            ValueError: If a session with the same id is registered.
        """
        if session.session_id in self._sessions:
            raise ValueError(f"Session already registered: {session.session_id}")
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[PairingSession]:
        """Get session by ID.

        Returns:
            PairingSession if found, None otherwise.
        """
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[PairingSession]:
        """Remove and return session by ID.

        Returns:
            Removed PairingSession if found, None otherwise.
        """
        return self._sessions.pop(session_id, None)

    def find_active_by_user(self, user_id: str) -> Optional[PairingSession]:
        """Find a non-terminal session for a user."""
        for session in self._sessions.values():
            if session.user_id == user_id and not session.state.is_terminal:
                return session
        return None

    def list_all(self) -> list[PairingSession]:
        """Get list of all sessions."""
        return list(self._sessions.values())

    def __len__(self) -> int:
        """Return number of sessions in registry."""
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        """Check if session exists in registry."""
        return session_id in self._sessions
