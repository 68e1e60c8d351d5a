"""WhatsApp client adapters."""

from wapair.whatsapp.bridge import BridgeClient, BridgeClientFactory

__all__ = ["BridgeClient", "BridgeClientFactory"]
