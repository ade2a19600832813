"""Domain entities and persistence collaborators used by the runtime."""
