"""Short-lived keyed state (upload sessions, interaction states)."""
from .store import InMemoryTTLStore, KeyValueStore

__all__ = ["InMemoryTTLStore", "KeyValueStore"]
