"""Persistence protocol and an in-memory implementation."""

from __future__ import annotations

from collections import defaultdict
from typing import Protocol, runtime_checkable

from toolrelay.llm.types import Message


@runtime_checkable
class Persistence(Protocol):
    """Append-only message store keyed by session id."""

    async def add_message(
        self, session_id: str, message: Message, auth_token: str | None = None
    ) -> None: ...


class InMemoryPersistence:
    """Keeps messages in a dict.  Used by tests and one-shot runs."""

    def __init__(self) -> None:
        self.sessions: dict[str, list[Message]] = defaultdict(list)

    async def add_message(
        self, session_id: str, message: Message, auth_token: str | None = None
    ) -> None:
        self.sessions[session_id].append(message)

    async def get_messages(self, session_id: str) -> list[Message]:
        return list(self.sessions.get(session_id, []))
