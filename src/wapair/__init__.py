"""wapair - WhatsApp pairing and bot deploy service."""

__version__ = "0.1.0"
