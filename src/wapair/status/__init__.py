"""Durable status records for pairing sessions."""

from wapair.status.json_store import JsonStatusStore, NullStatusStore
from wapair.status.labels import display_status, status_for_state

__all__ = [
    "JsonStatusStore",
    "NullStatusStore",
    "display_status",
    "status_for_state",
]
