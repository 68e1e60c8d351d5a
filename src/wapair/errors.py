"""Base exceptions for the wapair service."""


class WapairError(Exception):
    """Base exception for all wapair errors."""

    pass


class ValidationError(WapairError):
    """Malformed pairing request input."""

    pass


class ConflictError(WapairError):
    """User already has an active pairing session."""

    pass


class PairingCodeError(WapairError):
    """WhatsApp client failed to produce a pairing code."""

    pass


class ConnectTimeoutError(WapairError):
    """No pairing code within the connect window."""

    pass


class ExpiryError(WapairError):
    """Session expired before the device was linked."""

    pass


class DeployError(WapairError):
    """Handoff to the deploy pipeline failed.

    Attributes:
        retryable: True if the failure is transient (network, 5xx).
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class GitError(DeployError):
    """git clone/commit/push failed."""

    pass


class HerokuError(DeployError):
    """Heroku platform API call failed."""

    pass


class BridgeError(WapairError):
    """WhatsApp bridge request failed."""

    pass


class StorageError(WapairError):
    """Credential store operation failed."""

    pass


class StatusStoreError(WapairError):
    """Status store operation failed."""

    pass
