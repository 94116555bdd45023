"""
Persistence collaborators.

The engine persists nothing itself. It talks to two injected collaborators:

- KeyValueStore: device-local, synchronous get/set/remove of JSON blobs
- RemoteProgressService: request/response calls keyed by identity

Reference implementations for both live here for tests, local development
and hosts that have nothing better.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from hackprogress.schemas import Identity, RoutineProgress

from .errors import PersistenceWriteError

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Local key-value store
# -----------------------------------------------------------------------------

@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value. Raises PersistenceWriteError."""
        ...

    def remove(self, key: str) -> None:
        ...


class MemoryKeyValueStore:
    """Dict-backed store. Values are round-tripped through JSON like a browser store."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self._data: dict[str, str] = {}
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise PersistenceWriteError(key, f"value is not JSON-serializable: {e}") from e
        if self.quota_bytes is not None:
            used = sum(len(v) for k, v in self._data.items() if k != key)
            if used + len(raw) > self.quota_bytes:
                raise PersistenceWriteError(key, "quota exceeded")
        self._data[key] = raw

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileKeyValueStore:
    """
    One JSON file per device holding every key.

    Writes go to a temporary file first and replace the original, so a
    failed write never leaves a truncated file behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @classmethod
    def for_device(cls, directory: str | Path, device_key: str) -> "JsonFileKeyValueStore":
        return cls(Path(directory) / f"{device_key}.json")

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable local store {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any], key: str):
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceWriteError(key, str(e)) from e

    def get(self, key: str) -> Optional[Any]:
        return self._read_all().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data, key)

    def remove(self, key: str) -> None:
        data = self._read_all()
        if key in data:
            del data[key]
            self._write_all(data, key)


# -----------------------------------------------------------------------------
# Remote service
# -----------------------------------------------------------------------------

@runtime_checkable
class RemoteProgressService(Protocol):
    async def fetch_completion_set(self, identity: Identity) -> set[str]:
        ...

    async def upsert_completion(self, identity: Identity, node_id: str, completed_at=None, completion_count: int = 1) -> None:
        ...

    async def fetch_completion_counts(self, identity: Identity) -> dict[str, int]:
        ...

    async def fetch_routine_position(self, identity: Identity, routine_id: str) -> Optional[RoutineProgress]:
        ...

    async def upsert_routine_position(
        self,
        identity: Identity,
        routine_id: str,
        position: int,
        progress: RoutineProgress,
    ) -> None:
        ...


class InMemoryRemoteService:
    """Remote service kept in process memory. Every upsert is an idempotent overwrite."""

    def __init__(self):
        self.completions: dict[str, dict[str, Any]] = {}
        self.completion_counts: dict[str, dict[str, int]] = {}
        self.positions: dict[tuple[str, str], RoutineProgress] = {}
        self.calls: list[tuple[str, str]] = []

    async def fetch_completion_set(self, identity: Identity) -> set[str]:
        self.calls.append(("fetch_completion_set", identity.key))
        return set(self.completions.get(identity.key, {}))

    async def upsert_completion(self, identity: Identity, node_id: str, completed_at=None, completion_count: int = 1) -> None:
        self.calls.append(("upsert_completion", node_id))
        counts = self.completion_counts.setdefault(identity.key, {})
        counts[node_id] = max(counts.get(node_id, 0), completion_count)
        records = self.completions.setdefault(identity.key, {})
        existing = records.get(node_id)
        # Keep the earliest known completion time
        if node_id not in records or (completed_at is not None and (existing is None or completed_at < existing)):
            records[node_id] = completed_at

    async def fetch_completion_counts(self, identity: Identity) -> dict[str, int]:
        self.calls.append(("fetch_completion_counts", identity.key))
        return dict(self.completion_counts.get(identity.key, {}))

    async def fetch_routine_position(self, identity: Identity, routine_id: str) -> Optional[RoutineProgress]:
        self.calls.append(("fetch_routine_position", routine_id))
        stored = self.positions.get((identity.key, routine_id))
        return copy.deepcopy(stored) if stored is not None else None

    async def upsert_routine_position(
        self,
        identity: Identity,
        routine_id: str,
        position: int,
        progress: RoutineProgress,
    ) -> None:
        self.calls.append(("upsert_routine_position", routine_id))
        self.positions[(identity.key, routine_id)] = progress.model_copy(
            update={"current_position": position}, deep=True
        )
