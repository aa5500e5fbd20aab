"""Conversation persistence."""

from toolrelay.session.memory import InMemoryPersistence, Persistence
from toolrelay.session.store import MessageStore

__all__ = ["InMemoryPersistence", "MessageStore", "Persistence"]
