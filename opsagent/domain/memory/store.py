"""Recent-action memory.

The in-memory store keeps the newest ``max_items`` actions per (user, domain),
newest first, the same shape a Redis list trimmed on every push would have.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from typing import Iterable, Protocol

from .entities import LearnedPattern, RecentAction


class ActionStore(Protocol):
    def record(self, user_id: str, domain: str, action: RecentAction) -> None:
        """Append an action (append-only)."""
        ...

    def recent(self, user_id: str, domain: str, limit: int = 20) -> list[RecentAction]:
        """Newest-first recent actions."""
        ...


class PatternSource(Protocol):
    def active_patterns(self, user_id: str, limit: int = 10) -> list[LearnedPattern]:
        ...


class InMemoryActionStore:
    def __init__(self, max_items: int = 20) -> None:
        self._max_items = max_items
        self._lock = threading.Lock()
        self._actions: dict[tuple[str, str], deque[RecentAction]] = defaultdict(
            lambda: deque(maxlen=self._max_items)
        )

    def record(self, user_id: str, domain: str, action: RecentAction) -> None:
        with self._lock:
            self._actions[(user_id, domain)].appendleft(action)

    def recent(self, user_id: str, domain: str, limit: int = 20) -> list[RecentAction]:
        with self._lock:
            return list(self._actions.get((user_id, domain), ()))[:limit]


class StaticPatternSource:
    """Patterns supplied up front, highest confidence first."""

    def __init__(self, patterns: dict[str, Iterable[LearnedPattern]] | None = None) -> None:
        self._patterns = {user: list(items) for user, items in (patterns or {}).items()}

    def active_patterns(self, user_id: str, limit: int = 10) -> list[LearnedPattern]:
        items = sorted(self._patterns.get(user_id, []), key=lambda p: p.confidence, reverse=True)
        return items[:limit]
