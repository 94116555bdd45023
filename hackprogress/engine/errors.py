"""Exception hierarchy for the progression engine."""

from typing import Optional


class ProgressEngineError(Exception):
    """Base class for engine errors."""


class DataIntegrityError(ProgressEngineError):
    """
    Malformed prerequisite graph: a true cycle, or nodes blocked behind one.

    Offending nodes are excluded from layering; `layers` holds what could
    still be placed.
    """

    def __init__(
        self,
        message: str,
        cycle_members: frozenset[str] = frozenset(),
        blocked: frozenset[str] = frozenset(),
        dangling: Optional[dict[str, frozenset[str]]] = None,
        layers: Optional[list[list[str]]] = None,
    ):
        super().__init__(message)
        self.cycle_members = cycle_members
        self.blocked = blocked
        self.dangling = dangling or {}
        self.layers = layers or []

    @property
    def excluded(self) -> frozenset[str]:
        return self.cycle_members | self.blocked


class PersistenceWriteError(ProgressEngineError):
    """Local key-value store rejected a write (quota, I/O, serialization)."""

    def __init__(self, key: str, message: str = "write failed"):
        super().__init__(f"{message} (key={key})")
        self.key = key


class RemoteSyncError(ProgressEngineError):
    """Remote read/write failed, possibly after retries."""

    def __init__(self, operation: str, message: str = "remote call failed", attempts: int = 1):
        super().__init__(f"{operation}: {message} (attempts={attempts})")
        self.operation = operation
        self.attempts = attempts


class UnknownContentError(ProgressEngineError, KeyError):
    """Lookup of an id that is not in the content catalog."""

    def __init__(self, item_id: str):
        super().__init__(f"Unknown content id: {item_id}")
        self.item_id = item_id

    def __str__(self) -> str:
        return f"Unknown content id: {self.item_id}"
