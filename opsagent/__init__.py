"""opsagent: agent execution core for a personal-operations assistant."""

__version__ = "0.1.0"
