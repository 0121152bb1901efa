"""Exceptions raised by the memory engine."""


class MemoryEngineError(Exception):
    """Base class for memory engine failures."""


class StoreError(MemoryEngineError):
    """A store transaction failed and was rolled back.

    The original ``sqlite3.Error`` is chained as ``__cause__``.
    """


class MemoryLimitError(MemoryEngineError, ValueError):
    """A persona reached its configured memory limit."""

    def __init__(self, persona_id: str, count: int, limit: int):
        self.persona_id = persona_id
        self.count = count
        self.limit = limit
        super().__init__(
            f"Memory limit reached for persona {persona_id}: {count}/{limit}. "
            "Delete or prune old memories before adding new ones."
        )
