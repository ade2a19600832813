"""Per-session conversation history used by the orchestrator."""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from typing import Protocol

from .context import ChatMessage


class ConversationStore(Protocol):
    def history(self, session_id: str, limit: int = 10) -> list[ChatMessage]:
        """Oldest-first, at most ``limit`` most recent messages."""
        ...

    def append(self, session_id: str, message: ChatMessage) -> None:
        ...


class InMemoryConversationStore:
    def __init__(self, max_messages: int = 50) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, deque[ChatMessage]] = defaultdict(lambda: deque(maxlen=max_messages))

    def history(self, session_id: str, limit: int = 10) -> list[ChatMessage]:
        with self._lock:
            messages = list(self._sessions.get(session_id, ()))
        return messages[-limit:] if limit else []

    def append(self, session_id: str, message: ChatMessage) -> None:
        with self._lock:
            self._sessions[session_id].append(message)
