"""Agent memory: recent actions and learned patterns."""
from .entities import ActionStatus, LearnedPattern, RecentAction
from .sql_store import SqlActionLogRepository
from .store import ActionStore, InMemoryActionStore, PatternSource, StaticPatternSource
