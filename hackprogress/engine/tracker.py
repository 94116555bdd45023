"""
ProgressTracker - One interface over anonymous and authenticated progress.

Two backends sit behind the tracker:
- LocalProgressBackend: device-local key-value store, used while anonymous
- RemoteProgressBackend: remote service with optimistic in-memory updates

The tracker picks the backend from the identity and owns the one-shot
reconciliation that merges anonymous progress into the account on sign-in.
The anonymous snapshot is cleared only after the remote store has confirmed
every merged record, so a failed sign-in can always be retried.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional

from pydantic import ValidationError

from hackprogress.config import EngineSettings
from hackprogress.schemas import (
    AnonymousIdentity,
    AuthenticatedIdentity,
    CompletionRecord,
    Identity,
    LocalProgressSummary,
    ProgressSnapshot,
    ReconciliationConflict,
    ReconciliationResult,
    RoutineProgress,
    utcnow,
)

from .errors import PersistenceWriteError, RemoteSyncError
from .retry import RetryPolicy
from .stores import JsonFileKeyValueStore, KeyValueStore, RemoteProgressService

logger = logging.getLogger(__name__)

STORAGE_VERSION = 1


def _earliest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return min(present) if present else None


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def _cooldown_left(last: Optional[datetime], cooldown_minutes: int, now: Optional[datetime] = None) -> timedelta:
    if last is None:
        return timedelta(0)
    left = last + timedelta(minutes=cooldown_minutes) - (now or utcnow())
    return max(left, timedelta(0))


def _build_routine(existing: Optional[RoutineProgress], routine_id: str, total_steps: int, **changes) -> RoutineProgress:
    """Validated copy of a routine's progress with changes applied."""
    base: dict[str, Any] = existing.model_dump() if existing is not None else {"routine_id": routine_id}
    base["total_steps"] = total_steps
    base.update(changes)
    base.setdefault("last_played_at", utcnow())
    return RoutineProgress(**base)


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------

class ProgressBackend(ABC):
    """Storage for one identity. Reads come from the in-memory snapshot."""

    def __init__(self, identity: Identity):
        self.identity = identity
        self.snapshot = ProgressSnapshot(subject_id=identity.key)

    def completion_set(self) -> frozenset[str]:
        return self.snapshot.completion_ids

    def routine_progress(self, routine_id: str) -> Optional[RoutineProgress]:
        return self.snapshot.routines.get(routine_id)

    async def load_routine(self, routine_id: str) -> Optional[RoutineProgress]:
        return self.routine_progress(routine_id)

    def _apply_completion(self, node_id: str, completed_at: Optional[datetime], repeat: bool = False) -> CompletionRecord:
        """Record a first completion, or count a repeat one when `repeat` is set."""
        when = completed_at or utcnow()
        record = self.snapshot.completions.get(node_id)
        if record is None:
            record = CompletionRecord(
                subject_id=self.identity.key,
                node_id=node_id,
                completed_at=when,
                last_completed_at=when,
                view_count=max(1, self.snapshot.views.get(node_id, 0)),
            )
            self.snapshot.completions[node_id] = record
        elif repeat:
            record.completion_count += 1
            record.last_completed_at = when
        return record

    def _apply_view(self, node_id: str):
        count = self.snapshot.views.get(node_id, 0) + 1
        self.snapshot.views[node_id] = count
        record = self.snapshot.completions.get(node_id)
        if record is not None:
            record.view_count = max(record.view_count, count)

    @abstractmethod
    async def record_completion(self, node_id: str, completed_at: Optional[datetime] = None, repeat: bool = False) -> bool:
        ...

    @abstractmethod
    async def record_view(self, node_id: str) -> bool:
        ...

    @abstractmethod
    async def save_routine(self, progress: RoutineProgress) -> bool:
        ...


class LocalProgressBackend(ProgressBackend):
    """
    Anonymous progress in the device-local store.

    The whole snapshot lives under one key as a versioned JSON blob. Writes
    are synchronous; a failed write returns False and the in-memory snapshot
    stays authoritative for the session.
    """

    def __init__(self, store: KeyValueStore, identity: AnonymousIdentity, settings: Optional[EngineSettings] = None):
        super().__init__(identity)
        self.store = store
        self.settings = settings or EngineSettings()
        self.storage_key = f"{self.settings.storage_key_prefix}:{identity.device_key}:progress"
        self.snapshot = self._read()

    def _read(self) -> ProgressSnapshot:
        empty = ProgressSnapshot(subject_id=self.identity.key)
        raw = self.store.get(self.storage_key)
        if raw is None:
            return empty
        if not isinstance(raw, dict) or raw.get("version") != STORAGE_VERSION:
            logger.warning(f"Ignoring local progress with unsupported format (key={self.storage_key})")
            return empty
        try:
            return ProgressSnapshot(
                subject_id=self.identity.key,
                completions=raw.get("completions", {}),
                routines=raw.get("routines", {}),
                views=raw.get("views", {}),
            )
        except ValidationError as e:
            logger.warning(f"Ignoring corrupt local progress (key={self.storage_key}): {e}")
            return empty

    def _persist(self) -> bool:
        data = {"version": STORAGE_VERSION, **self.snapshot.model_dump(mode="json", exclude={"subject_id"})}
        try:
            self.store.set(self.storage_key, data)
        except PersistenceWriteError as e:
            logger.warning(f"Local progress not saved, keeping it in memory: {e}")
            return False
        return True

    def reload(self) -> ProgressSnapshot:
        self.snapshot = self._read()
        return self.snapshot

    async def record_completion(self, node_id: str, completed_at: Optional[datetime] = None, repeat: bool = False) -> bool:
        self._apply_completion(node_id, completed_at, repeat)
        return self._persist()

    async def record_view(self, node_id: str) -> bool:
        self._apply_view(node_id)
        return self._persist()

    async def save_routine(self, progress: RoutineProgress) -> bool:
        routines = self.snapshot.routines
        if progress.routine_id not in routines and len(routines) >= self.settings.max_anonymous_routines:
            oldest = min(routines.values(), key=lambda r: r.last_played_at)
            logger.info(f"Anonymous routine limit reached, dropping {oldest.routine_id}")
            del routines[oldest.routine_id]
        routines[progress.routine_id] = progress
        return self._persist()

    def clear(self) -> bool:
        try:
            self.store.remove(self.storage_key)
        except PersistenceWriteError as e:
            logger.warning(f"Could not clear local progress: {e}")
            return False
        self.snapshot = ProgressSnapshot(subject_id=self.identity.key)
        return True


class RemoteProgressBackend(ProgressBackend):
    """
    Authenticated progress in the remote service.

    Updates land in memory first, then go to the remote through the retry
    policy. Position writes for one routine are serialized and the newest
    (by last_played_at) wins.
    """

    def __init__(self, service: RemoteProgressService, identity: AuthenticatedIdentity, retry_policy: RetryPolicy):
        super().__init__(identity)
        self.service = service
        self.retry_policy = retry_policy
        self._routine_locks: dict[str, asyncio.Lock] = {}
        self._written_at: dict[str, datetime] = {}

    async def fetch_snapshot(self, routine_ids: Iterable[str] = ()) -> ProgressSnapshot:
        """Read the remote state for this identity. Raises RemoteSyncError."""
        node_ids = await self.retry_policy.run(
            "fetch_completion_set", self.service.fetch_completion_set, self.identity
        )
        counts = await self.retry_policy.run(
            "fetch_completion_counts", self.service.fetch_completion_counts, self.identity
        )
        snapshot = ProgressSnapshot(
            subject_id=self.identity.key,
            completions={
                node_id: CompletionRecord(
                    subject_id=self.identity.key, node_id=node_id, completion_count=max(1, counts.get(node_id, 1)),
                )
                for node_id in node_ids
            },
        )
        for routine_id in routine_ids:
            position = await self.retry_policy.run(
                "fetch_routine_position", self.service.fetch_routine_position, self.identity, routine_id
            )
            if position is not None:
                snapshot.routines[routine_id] = position
        return snapshot

    async def refresh(self, routine_ids: Iterable[str] = ()) -> ProgressSnapshot:
        """Reload from the remote, keeping optimistic records it does not know yet."""
        fetched = await self.fetch_snapshot(routine_ids)
        self.snapshot, _ = merge_snapshots(self.snapshot, fetched, self.identity.key)
        return self.snapshot

    async def load_routine(self, routine_id: str) -> Optional[RoutineProgress]:
        """Saved progress for a routine, read from the remote if not cached. Raises RemoteSyncError."""
        if routine_id not in self.snapshot.routines:
            fetched = await self.retry_policy.run(
                "fetch_routine_position", self.service.fetch_routine_position, self.identity, routine_id
            )
            # A local write may have landed while the fetch was in flight
            if fetched is not None and routine_id not in self.snapshot.routines:
                self.snapshot.routines[routine_id] = fetched
        return self.snapshot.routines.get(routine_id)

    async def record_completion(self, node_id: str, completed_at: Optional[datetime] = None, repeat: bool = False) -> bool:
        record = self._apply_completion(node_id, completed_at, repeat)
        try:
            await self.retry_policy.run(
                "upsert_completion", self.service.upsert_completion,
                self.identity, node_id, record.completed_at, record.completion_count,
            )
        except RemoteSyncError as e:
            logger.warning(f"Completion of {node_id} not synced: {e}")
            return False
        return True

    async def record_view(self, node_id: str) -> bool:
        self._apply_view(node_id)
        return True

    async def save_routine(self, progress: RoutineProgress) -> bool:
        routine_id = progress.routine_id
        current = self.snapshot.routines.get(routine_id)
        if current is None or progress.last_played_at >= current.last_played_at:
            self.snapshot.routines[routine_id] = progress

        lock = self._routine_locks.setdefault(routine_id, asyncio.Lock())
        async with lock:
            latest = self._written_at.get(routine_id)
            if latest is not None and progress.last_played_at < latest:
                logger.debug(f"Dropping stale position write for {routine_id}")
                return True
            try:
                await self.retry_policy.run(
                    "upsert_routine_position",
                    self.service.upsert_routine_position,
                    self.identity,
                    routine_id,
                    progress.current_position,
                    progress,
                )
            except RemoteSyncError as e:
                logger.warning(f"Position for {routine_id} not synced: {e}")
                return False
            self._written_at[routine_id] = progress.last_played_at
        return True


# -----------------------------------------------------------------------------
# Merge
# -----------------------------------------------------------------------------

def merge_snapshots(
    anonymous: ProgressSnapshot,
    remote: ProgressSnapshot,
    subject_id: str,
) -> tuple[ProgressSnapshot, list[ReconciliationConflict]]:
    """
    Merge two snapshots without losing anything.

    - completions: union; earliest completed_at, highest view_count and
      completion_count, latest last_completed_at
    - views: highest count per node
    - routines: highest position, total and completion_count, union of
      completed steps, latest last_played_at and last_completed_at,
      earliest started_at, autoplay from the side played most recently
      (remote on ties)

    Pure and idempotent: merging the result with either input again gives
    the same snapshot.
    """
    conflicts: list[ReconciliationConflict] = []
    merged = ProgressSnapshot(subject_id=subject_id)

    for node_id in sorted(set(anonymous.completions) | set(remote.completions)):
        a = anonymous.completions.get(node_id)
        r = remote.completions.get(node_id)
        if a is not None and r is not None:
            completed_at = _earliest(a.completed_at, r.completed_at)
            view_count = max(a.view_count, r.view_count)
            if a.completed_at and r.completed_at and a.completed_at != r.completed_at:
                conflicts.append(ReconciliationConflict(
                    kind="completed_at", item_id=node_id,
                    anonymous_value=a.completed_at, remote_value=r.completed_at, resolved_value=completed_at,
                ))
            if a.view_count != r.view_count:
                conflicts.append(ReconciliationConflict(
                    kind="view_count", item_id=node_id,
                    anonymous_value=a.view_count, remote_value=r.view_count, resolved_value=view_count,
                ))
            completion_count = max(a.completion_count, r.completion_count)
            if a.completion_count != r.completion_count:
                conflicts.append(ReconciliationConflict(
                    kind="completion_count", item_id=node_id,
                    anonymous_value=a.completion_count, remote_value=r.completion_count,
                    resolved_value=completion_count,
                ))
            last_completed_at = _latest(a.last_completed_at, r.last_completed_at)
        else:
            source = a if a is not None else r
            completed_at, view_count = source.completed_at, source.view_count
            completion_count, last_completed_at = source.completion_count, source.last_completed_at
        merged.completions[node_id] = CompletionRecord(
            subject_id=subject_id,
            node_id=node_id,
            completed_at=completed_at,
            view_count=view_count,
            completion_count=completion_count,
            last_completed_at=last_completed_at,
        )

    for node_id in set(anonymous.views) | set(remote.views):
        merged.views[node_id] = max(anonymous.views.get(node_id, 0), remote.views.get(node_id, 0))

    for routine_id in sorted(set(anonymous.routines) | set(remote.routines)):
        a = anonymous.routines.get(routine_id)
        r = remote.routines.get(routine_id)
        if a is None or r is None:
            merged.routines[routine_id] = (a if a is not None else r).model_copy(deep=True)
            continue

        total_steps = max(a.total_steps, r.total_steps)
        position = min(max(a.current_position, r.current_position), total_steps - 1)
        autoplay = a.autoplay_enabled if a.last_played_at > r.last_played_at else r.autoplay_enabled

        if a.current_position != r.current_position:
            conflicts.append(ReconciliationConflict(
                kind="routine_position", item_id=routine_id,
                anonymous_value=a.current_position, remote_value=r.current_position, resolved_value=position,
            ))
        if a.total_steps != r.total_steps:
            conflicts.append(ReconciliationConflict(
                kind="routine_total", item_id=routine_id,
                anonymous_value=a.total_steps, remote_value=r.total_steps, resolved_value=total_steps,
            ))
        if a.autoplay_enabled != r.autoplay_enabled:
            conflicts.append(ReconciliationConflict(
                kind="autoplay", item_id=routine_id,
                anonymous_value=a.autoplay_enabled, remote_value=r.autoplay_enabled, resolved_value=autoplay,
            ))

        merged.routines[routine_id] = RoutineProgress(
            routine_id=routine_id,
            current_position=position,
            total_steps=total_steps,
            completed_step_ids=a.completed_step_ids | r.completed_step_ids,
            autoplay_enabled=autoplay,
            started_at=min(a.started_at, r.started_at),
            last_played_at=max(a.last_played_at, r.last_played_at),
            completion_count=max(a.completion_count, r.completion_count),
            last_completed_at=_latest(a.last_completed_at, r.last_completed_at),
        )

    for conflict in conflicts:
        logger.debug(f"Resolved {conflict.kind} conflict on {conflict.item_id}: {conflict.resolved_value}")

    return merged, conflicts


# -----------------------------------------------------------------------------
# Tracker
# -----------------------------------------------------------------------------

class ProgressTracker:
    """
    Record and read progress for whichever identity is active.

    Callers never touch a backend directly. The tracker routes anonymous
    identities to the device store and authenticated ones to the remote
    service, and performs the anonymous -> authenticated reconciliation.
    """

    def __init__(
        self,
        local_store: KeyValueStore,
        remote_service: RemoteProgressService,
        device_key: str,
        settings: Optional[EngineSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize tracker.

        Args:
            local_store: Device-local key-value store
            remote_service: Remote read/write service
            device_key: Key of this device's anonymous identity
            settings: Engine settings (default: EngineSettings())
            retry_policy: Policy for remote calls (default: built from settings)
        """
        self.settings = settings or EngineSettings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.local_store = local_store
        self.remote_service = remote_service
        self.device_identity = AnonymousIdentity(device_key=device_key)
        self.identity: Identity = self.device_identity
        self._local_backends: dict[str, LocalProgressBackend] = {}
        self._remote_backends: dict[str, RemoteProgressBackend] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    @classmethod
    def with_file_store(
        cls,
        remote_service: RemoteProgressService,
        device_key: str,
        settings: Optional[EngineSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "ProgressTracker":
        """Tracker whose anonymous progress lives in a JSON file under settings.local_store_dir."""
        settings = settings or EngineSettings()
        store = JsonFileKeyValueStore.for_device(settings.local_store_dir, device_key)
        return cls(store, remote_service, device_key, settings=settings, retry_policy=retry_policy)

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @property
    def is_anonymous(self) -> bool:
        return isinstance(self.identity, AnonymousIdentity)

    @property
    def saves_locally(self) -> bool:
        """True while progress only lives on this device."""
        return self.is_anonymous

    @property
    def is_reconciling(self) -> bool:
        return any(not task.done() for task in self._inflight.values())

    def sign_out(self):
        self.identity = self.device_identity

    def backend_for(self, identity: Optional[Identity] = None) -> ProgressBackend:
        identity = identity or self.identity
        if isinstance(identity, AnonymousIdentity):
            backend = self._local_backends.get(identity.device_key)
            if backend is None:
                backend = LocalProgressBackend(self.local_store, identity, self.settings)
                self._local_backends[identity.device_key] = backend
            return backend

        remote = self._remote_backends.get(identity.user_id)
        if remote is None:
            remote = RemoteProgressBackend(self.remote_service, identity, self.retry_policy)
            self._remote_backends[identity.user_id] = remote
        return remote

    @property
    def local_backend(self) -> LocalProgressBackend:
        return self.backend_for(self.device_identity)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def completion_set(self, identity: Optional[Identity] = None) -> frozenset[str]:
        return self.backend_for(identity).completion_set()

    def routine_progress(self, identity: Optional[Identity], routine_id: str) -> Optional[RoutineProgress]:
        return self.backend_for(identity).routine_progress(routine_id)

    def snapshot(self, identity: Optional[Identity] = None) -> ProgressSnapshot:
        return self.backend_for(identity).snapshot.model_copy(deep=True)

    def local_summary(self) -> LocalProgressSummary:
        """What anonymous progress this device holds."""
        snapshot = self.local_backend.snapshot
        viewed = set(snapshot.views) | set(snapshot.completions)
        return LocalProgressSummary(
            completed_hacks=len(snapshot.completions),
            hacks_viewed=len(viewed),
            routines_started=len(snapshot.routines),
            has_progress=not snapshot.is_empty,
        )

    async def load_routine(self, identity: Optional[Identity], routine_id: str) -> Optional[RoutineProgress]:
        """
        Saved progress for a routine, fetched from the remote when not cached.

        An unreachable remote is logged and treated as nothing saved yet.
        """
        backend = self.backend_for(identity)
        try:
            return await backend.load_routine(routine_id)
        except RemoteSyncError as e:
            logger.warning(f"Could not load saved position for {routine_id}: {e}")
            return backend.routine_progress(routine_id)

    # -------------------------------------------------------------------------
    # Repeat completions
    # -------------------------------------------------------------------------

    def completion_count(self, identity: Optional[Identity], node_id: str) -> int:
        record = self.backend_for(identity).snapshot.completions.get(node_id)
        return record.completion_count if record is not None else 0

    def routine_completion_count(self, identity: Optional[Identity], routine_id: str) -> int:
        progress = self.routine_progress(identity, routine_id)
        return progress.completion_count if progress is not None else 0

    def _node_cooldown(self, identity: Optional[Identity], node_id: str, now: Optional[datetime]) -> timedelta:
        record = self.backend_for(identity).snapshot.completions.get(node_id)
        last = record.latest_completion if record is not None else None
        return _cooldown_left(last, self.settings.completion_cooldown_minutes, now)

    def _routine_cooldown(self, identity: Optional[Identity], routine_id: str, now: Optional[datetime]) -> timedelta:
        progress = self.routine_progress(identity, routine_id)
        last = progress.last_completed_at if progress is not None else None
        return _cooldown_left(last, self.settings.completion_cooldown_minutes, now)

    def can_complete(self, identity: Optional[Identity], node_id: str, now: Optional[datetime] = None) -> bool:
        """Whether completing the node again would count as a repeat."""
        return not self._node_cooldown(identity, node_id, now)

    def cooldown_minutes(self, identity: Optional[Identity], node_id: str, now: Optional[datetime] = None) -> int:
        """Whole minutes (rounded up) until the node can be completed again."""
        return math.ceil(self._node_cooldown(identity, node_id, now).total_seconds() / 60)

    def can_complete_routine(self, identity: Optional[Identity], routine_id: str, now: Optional[datetime] = None) -> bool:
        return not self._routine_cooldown(identity, routine_id, now)

    def routine_cooldown_minutes(self, identity: Optional[Identity], routine_id: str, now: Optional[datetime] = None) -> int:
        return math.ceil(self._routine_cooldown(identity, routine_id, now).total_seconds() / 60)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def record_completion(self, identity: Optional[Identity], node_id: str) -> bool:
        """
        Record a completion.

        The first completion adds the node to the completion set. Later ones
        raise its completion count, but only once the cooldown has passed.
        """
        repeat = self.can_complete(identity, node_id)
        return await self.backend_for(identity).record_completion(node_id, repeat=repeat)

    async def record_view(self, identity: Optional[Identity], node_id: str) -> bool:
        return await self.backend_for(identity).record_view(node_id)

    async def update_position(self, identity: Optional[Identity], routine_id: str, position: int, total_steps: int) -> bool:
        """Overwrite a routine's position. Replaying the same call is harmless."""
        if not 0 <= position < total_steps:
            raise ValueError(f"Position {position} out of range for {total_steps} steps")
        backend = self.backend_for(identity)
        progress = _build_routine(
            backend.routine_progress(routine_id), routine_id, total_steps,
            current_position=position, last_played_at=utcnow(),
        )
        return await backend.save_routine(progress)

    async def set_autoplay(self, identity: Optional[Identity], routine_id: str, enabled: bool, total_steps: int) -> bool:
        backend = self.backend_for(identity)
        progress = _build_routine(
            backend.routine_progress(routine_id), routine_id, total_steps,
            autoplay_enabled=enabled, last_played_at=utcnow(),
        )
        return await backend.save_routine(progress)

    async def mark_step_complete(self, identity: Optional[Identity], routine_id: str, step_id: str, total_steps: int) -> bool:
        """Complete one routine step: the hack itself plus the routine's step set."""
        backend = self.backend_for(identity)
        completed_ok = await backend.record_completion(step_id, repeat=self.can_complete(identity, step_id))
        existing = backend.routine_progress(routine_id)
        steps = set(existing.completed_step_ids) if existing is not None else set()
        steps.add(step_id)
        progress = _build_routine(
            existing, routine_id, total_steps, completed_step_ids=steps, last_played_at=utcnow(),
        )
        saved_ok = await backend.save_routine(progress)
        return completed_ok and saved_ok

    async def complete_routine(
        self,
        identity: Optional[Identity],
        routine_id: str,
        step_ids: list[str],
        position: Optional[int] = None,
    ) -> bool:
        """
        Mark every step complete and store the routine at 100%.

        Also counts one routine completion unless the routine is still in its
        cooldown.
        """
        backend = self.backend_for(identity)
        counted = self.can_complete_routine(identity, routine_id)
        ok = True
        for step_id in step_ids:
            if step_id not in backend.completion_set():
                ok = await backend.record_completion(step_id) and ok
        total_steps = len(step_ids)
        existing = backend.routine_progress(routine_id)
        changes: dict[str, Any] = {}
        if counted:
            changes["completion_count"] = (existing.completion_count if existing is not None else 0) + 1
            changes["last_completed_at"] = utcnow()
        progress = _build_routine(
            existing, routine_id, total_steps,
            current_position=total_steps - 1 if position is None else position,
            completed_step_ids=set(step_ids),
            last_played_at=utcnow(),
            **changes,
        )
        return await backend.save_routine(progress) and ok

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def _guarded(self, user_id: str, factory: Callable[[], Awaitable[ReconciliationResult]]) -> ReconciliationResult:
        """
        Run one reconciliation per account at a time.

        A second request for the same account joins the one in flight. A
        request for another account waits for it and then runs its own.
        """
        task = self._inflight.get(user_id)
        if task is not None and not task.done():
            logger.info(f"Reconciliation for {user_id} already in progress; waiting for it")
            return await asyncio.shield(task)

        pending = [t for t in self._inflight.values() if not t.done()]
        self._inflight = {key: t for key, t in self._inflight.items() if not t.done()}
        task = asyncio.ensure_future(self._run_after(pending, factory))
        self._inflight[user_id] = task
        return await asyncio.shield(task)

    @staticmethod
    async def _run_after(
        pending: list[asyncio.Task],
        factory: Callable[[], Awaitable[ReconciliationResult]],
    ) -> ReconciliationResult:
        if pending:
            await asyncio.wait(pending)
        return await factory()

    async def reconcile_on_auth(
        self,
        anonymous_snapshot: ProgressSnapshot,
        remote_snapshot: ProgressSnapshot,
        user_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Merge anonymous progress into an account and write the result remotely.

        Args:
            anonymous_snapshot: Progress recorded on this device
            remote_snapshot: Progress the remote already holds for the account
            user_id: Account id (default: the active authenticated identity)

        Returns:
            ReconciliationResult; success=False leaves the anonymous snapshot in place
        """
        if user_id is None:
            if self.is_anonymous:
                raise ValueError("reconcile_on_auth needs a user_id while anonymous")
            user_id = self.identity.user_id
        identity = AuthenticatedIdentity(user_id=user_id)
        return await self._guarded(user_id, lambda: self._reconcile(anonymous_snapshot, remote_snapshot, identity))

    async def sign_in(self, user_id: str) -> ReconciliationResult:
        """Switch to the account and merge this device's anonymous progress into it."""
        identity = AuthenticatedIdentity(user_id=user_id)
        self.identity = identity
        return await self._guarded(user_id, lambda: self._sign_in(identity))

    async def _sign_in(self, identity: AuthenticatedIdentity) -> ReconciliationResult:
        anonymous = self.local_backend.snapshot.model_copy(deep=True)
        remote_backend = self.backend_for(identity)
        try:
            remote = await remote_backend.fetch_snapshot(anonymous.routines)
        except RemoteSyncError as e:
            logger.warning(f"Sign-in reconciliation postponed, remote unavailable: {e}")
            merged, conflicts = merge_snapshots(anonymous, remote_backend.snapshot, identity.key)
            # The account sees the device's progress until a retry succeeds
            remote_backend.snapshot = merged.model_copy(deep=True)
            return ReconciliationResult(success=False, merged=merged, conflicts=conflicts, error=str(e))
        return await self._reconcile(anonymous, remote, identity)

    async def _reconcile(
        self,
        anonymous: ProgressSnapshot,
        remote: ProgressSnapshot,
        identity: AuthenticatedIdentity,
    ) -> ReconciliationResult:
        logger.info(
            f"Reconciling {len(anonymous.completions)} anonymous completion(s) into {identity.key} "
            f"({len(remote.completions)} remote)"
        )
        merged, conflicts = merge_snapshots(anonymous, remote, identity.key)
        remote_backend = self.backend_for(identity)
        service = self.remote_service

        writes = []
        for node_id, record in merged.completions.items():
            if remote.completions.get(node_id) != record:
                writes.append(self.retry_policy.run(
                    "upsert_completion", service.upsert_completion,
                    identity, node_id, record.completed_at, record.completion_count,
                ))
        for routine_id, progress in merged.routines.items():
            if remote.routines.get(routine_id) != progress:
                writes.append(self.retry_policy.run(
                    "upsert_routine_position", service.upsert_routine_position,
                    identity, routine_id, progress.current_position, progress,
                ))

        outcomes = await asyncio.gather(*writes, return_exceptions=True)
        failures = [o for o in outcomes if isinstance(o, Exception)]
        for failure in failures:
            if not isinstance(failure, RemoteSyncError):
                raise failure

        # Keep whatever the remote backend already knows optimistically
        remote_backend.snapshot, _ = merge_snapshots(remote_backend.snapshot, merged, identity.key)

        if failures:
            logger.warning(
                f"Reconciliation incomplete: {len(failures)} of {len(writes)} write(s) failed; keeping anonymous progress"
            )
            return ReconciliationResult(success=False, merged=merged, conflicts=conflicts, error=str(failures[0]))

        local = self.local_backend.snapshot
        if not local.is_empty:
            # Only clear what the merge actually carried over
            covered, _ = merge_snapshots(local, merged, identity.key)
            if covered != merged:
                logger.info("Local progress is not part of this merge; keeping it on the device")
            elif not self.local_backend.clear():
                logger.warning("Merged progress is remote, but local copy could not be cleared")

        logger.info(f"Reconciliation complete: {len(merged.completions)} completion(s), {len(writes)} write(s)")
        return ReconciliationResult(success=True, merged=merged, conflicts=conflicts)
