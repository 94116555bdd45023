"""Tests for anonymous -> authenticated reconciliation."""

import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FlakyRemoteService, settle
from hackprogress.engine.tracker import ProgressTracker, merge_snapshots
from hackprogress.schemas import (
    AuthenticatedIdentity,
    CompletionRecord,
    ProgressSnapshot,
    RoutineProgress,
)

STORAGE_KEY = "hackprogress:device-1:progress"
USER = AuthenticatedIdentity(user_id="u1")
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class GatedRemote(FlakyRemoteService):
    """Remote whose completion writes wait until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def upsert_completion(self, identity, node_id, completed_at=None, completion_count=1):
        await self.gate.wait()
        await super().upsert_completion(identity, node_id, completed_at, completion_count)


def record(subject, node_id, when=None, views=0, count=1, last=None):
    return CompletionRecord(
        subject_id=subject, node_id=node_id, completed_at=when, view_count=views,
        completion_count=count, last_completed_at=last,
    )


def routine(routine_id, position, total=5, played=T0, autoplay=True, steps=(), completions=0):
    return RoutineProgress(
        routine_id=routine_id,
        current_position=position,
        total_steps=total,
        completed_step_ids=set(steps),
        autoplay_enabled=autoplay,
        started_at=T0,
        last_played_at=played,
        completion_count=completions,
    )


def random_snapshot(rng: random.Random, subject: str) -> ProgressSnapshot:
    snapshot = ProgressSnapshot(subject_id=subject)
    for node_id in rng.sample([f"h{i}" for i in range(8)], rng.randint(0, 6)):
        when = T0 + timedelta(hours=rng.randint(0, 48)) if rng.random() < 0.7 else None
        last = when + timedelta(hours=rng.randint(0, 5)) if when is not None else None
        snapshot.completions[node_id] = record(subject, node_id, when, rng.randint(0, 4), rng.randint(1, 6), last)
    for node_id in rng.sample([f"h{i}" for i in range(8)], rng.randint(0, 4)):
        snapshot.views[node_id] = rng.randint(1, 9)
    for routine_id in rng.sample(["r1", "r2", "r3"], rng.randint(0, 3)):
        total = rng.randint(1, 6)
        snapshot.routines[routine_id] = routine(
            routine_id,
            rng.randint(0, total - 1),
            total=total,
            played=T0 + timedelta(minutes=rng.randint(0, 3)),
            autoplay=rng.random() < 0.5,
            steps=rng.sample(["h0", "h1", "h2"], rng.randint(0, 3)),
            completions=rng.randint(0, 3),
        )
    return snapshot


class TestMergeSnapshots:
    """Test the pure merge."""

    def test_union_of_completions(self):
        anonymous = ProgressSnapshot(subject_id="anon", completions={"a": record("anon", "a", T0)})
        remote = ProgressSnapshot(subject_id=USER.key, completions={"b": record(USER.key, "b")})
        merged, conflicts = merge_snapshots(anonymous, remote, USER.key)
        assert merged.completion_ids == frozenset({"a", "b"})
        assert all(r.subject_id == USER.key for r in merged.completions.values())
        assert conflicts == []

    def test_earliest_completion_and_most_views(self):
        anonymous = ProgressSnapshot(subject_id="anon", completions={"a": record("anon", "a", T0, views=5)})
        remote = ProgressSnapshot(subject_id=USER.key, completions={"a": record(USER.key, "a", T0 + timedelta(days=1), views=2)})
        merged, conflicts = merge_snapshots(anonymous, remote, USER.key)
        assert merged.completions["a"].completed_at == T0
        assert merged.completions["a"].view_count == 5
        assert {c.kind for c in conflicts} == {"completed_at", "view_count"}

    def test_routine_position_is_max(self):
        anonymous = ProgressSnapshot(subject_id="anon", routines={"r": routine("r", 3, steps=["a"])})
        remote = ProgressSnapshot(subject_id=USER.key, routines={"r": routine("r", 1, steps=["b"])})
        merged, conflicts = merge_snapshots(anonymous, remote, USER.key)
        assert merged.routines["r"].current_position == 3
        assert merged.routines["r"].completed_step_ids == {"a", "b"}
        conflict = next(c for c in conflicts if c.kind == "routine_position")
        assert (conflict.anonymous_value, conflict.remote_value, conflict.resolved_value) == (3, 1, 3)

    def test_larger_total_wins(self):
        anonymous = ProgressSnapshot(subject_id="anon", routines={"r": routine("r", 4, total=5)})
        remote = ProgressSnapshot(subject_id=USER.key, routines={"r": routine("r", 2, total=7)})
        merged, _ = merge_snapshots(anonymous, remote, USER.key)
        assert merged.routines["r"].total_steps == 7
        assert merged.routines["r"].current_position == 4

    def test_autoplay_from_most_recent_side(self):
        anonymous = ProgressSnapshot(subject_id="anon", routines={"r": routine("r", 0, autoplay=False, played=T0 + timedelta(minutes=1))})
        remote = ProgressSnapshot(subject_id=USER.key, routines={"r": routine("r", 0, autoplay=True, played=T0)})
        merged, _ = merge_snapshots(anonymous, remote, USER.key)
        assert merged.routines["r"].autoplay_enabled is False
        assert merged.routines["r"].last_played_at == T0 + timedelta(minutes=1)

    def test_autoplay_tie_prefers_remote(self):
        anonymous = ProgressSnapshot(subject_id="anon", routines={"r": routine("r", 0, autoplay=False)})
        remote = ProgressSnapshot(subject_id=USER.key, routines={"r": routine("r", 0, autoplay=True)})
        merged, _ = merge_snapshots(anonymous, remote, USER.key)
        assert merged.routines["r"].autoplay_enabled is True

    def test_completion_counts_take_max(self):
        anonymous = ProgressSnapshot(subject_id="anon", completions={
            "a": record("anon", "a", T0, count=3, last=T0 + timedelta(hours=2)),
        })
        remote = ProgressSnapshot(subject_id=USER.key, completions={
            "a": record(USER.key, "a", T0, count=5, last=T0 + timedelta(hours=1)),
        })
        merged, conflicts = merge_snapshots(anonymous, remote, USER.key)
        assert merged.completions["a"].completion_count == 5
        assert merged.completions["a"].last_completed_at == T0 + timedelta(hours=2)
        conflict = next(c for c in conflicts if c.kind == "completion_count")
        assert (conflict.anonymous_value, conflict.remote_value, conflict.resolved_value) == (3, 5, 5)

    def test_routine_completion_count_is_max(self):
        anonymous = ProgressSnapshot(subject_id="anon", routines={"r": routine("r", 0, completions=4)})
        remote = ProgressSnapshot(subject_id=USER.key, routines={"r": routine("r", 0, completions=2)})
        merged, _ = merge_snapshots(anonymous, remote, USER.key)
        assert merged.routines["r"].completion_count == 4

    def test_inputs_untouched(self):
        anonymous = ProgressSnapshot(subject_id="anon", routines={"r": routine("r", 2)})
        remote = ProgressSnapshot(subject_id=USER.key)
        merged, _ = merge_snapshots(anonymous, remote, USER.key)
        merged.routines["r"].completed_step_ids.add("x")
        assert anonymous.routines["r"].completed_step_ids == set()

    @pytest.mark.parametrize("seed", range(25))
    def test_idempotent(self, seed):
        rng = random.Random(seed)
        a = random_snapshot(rng, "anonymous:device-1")
        b = random_snapshot(rng, USER.key)
        once, _ = merge_snapshots(a, b, USER.key)
        twice, _ = merge_snapshots(once, b, USER.key)
        assert twice == once

    @pytest.mark.parametrize("seed", range(25))
    def test_never_loses_data(self, seed):
        rng = random.Random(seed)
        a = random_snapshot(rng, "anonymous:device-1")
        b = random_snapshot(rng, USER.key)
        merged, _ = merge_snapshots(a, b, USER.key)
        assert merged.completion_ids >= a.completion_ids | b.completion_ids
        for node_id, merged_record in merged.completions.items():
            for side in (a, b):
                if node_id in side.completions:
                    assert merged_record.completion_count >= side.completions[node_id].completion_count
        for routine_id, progress in merged.routines.items():
            for side in (a, b):
                if routine_id in side.routines:
                    assert progress.current_position >= side.routines[routine_id].current_position
                    assert progress.completed_step_ids >= side.routines[routine_id].completed_step_ids
                    assert progress.completion_count >= side.routines[routine_id].completion_count
            assert 0 <= progress.current_position < progress.total_steps


class TestSignIn:
    """Test the guarded sign-in reconciliation."""

    @pytest.mark.asyncio
    async def test_anonymous_completions_move_to_account(self, tracker, remote, local_store):
        await tracker.record_completion(None, "hackA")
        await tracker.record_completion(None, "hackB")

        result = await tracker.sign_in("u1")

        assert result.success
        assert result.merged.completion_ids == frozenset({"hackA", "hackB"})
        assert await remote.fetch_completion_set(USER) == {"hackA", "hackB"}
        assert local_store.get(STORAGE_KEY) is None
        assert tracker.completion_set() == frozenset({"hackA", "hackB"})
        assert not tracker.saves_locally

    @pytest.mark.asyncio
    async def test_existing_remote_progress_kept(self, tracker, remote):
        await remote.upsert_completion(USER, "hackC")
        await tracker.record_completion(None, "hackA")
        result = await tracker.sign_in("u1")
        assert result.merged.completion_ids == frozenset({"hackA", "hackC"})
        assert await remote.fetch_completion_set(USER) == {"hackA", "hackC"}

    @pytest.mark.asyncio
    async def test_routine_positions_merged(self, tracker, remote):
        await remote.upsert_routine_position(USER, "morning", 1, routine("morning", 1))
        await tracker.update_position(None, "morning", 3, 5)
        result = await tracker.sign_in("u1")
        assert result.success
        stored = await remote.fetch_routine_position(USER, "morning")
        assert stored.current_position == 3
        assert any(c.kind == "routine_position" for c in result.conflicts)

    @pytest.mark.asyncio
    async def test_failed_write_keeps_anonymous_progress(self, tracker, remote, local_store):
        await tracker.record_completion(None, "hackA")
        remote.fail("upsert_completion")

        result = await tracker.sign_in("u1")

        assert not result.success
        assert result.error
        assert remote.attempts.count("upsert_completion") == 2
        assert "hackA" in local_store.get(STORAGE_KEY)["completions"]

        remote.heal()
        tracker.sign_out()
        retry = await tracker.sign_in("u1")
        assert retry.success
        assert retry.merged == result.merged
        assert local_store.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_unreachable_remote(self, tracker, remote, local_store):
        await tracker.record_completion(None, "hackA")
        remote.fail("fetch_completion_set")
        result = await tracker.sign_in("u1")
        assert not result.success
        assert "fetch_completion_set" in result.error
        assert local_store.get(STORAGE_KEY) is not None
        # The account still shows what the device had
        assert not tracker.is_anonymous
        assert tracker.completion_set() == frozenset({"hackA"})

    @pytest.mark.asyncio
    async def test_unreachable_remote_then_retry(self, tracker, remote, local_store):
        await tracker.record_completion(None, "hackA")
        remote.fail("fetch_completion_set")
        await tracker.sign_in("u1")

        remote.heal()
        tracker.sign_out()
        result = await tracker.sign_in("u1")

        assert result.success
        assert await remote.fetch_completion_set(USER) == {"hackA"}
        assert local_store.get(STORAGE_KEY) is None
        assert tracker.completion_set() == frozenset({"hackA"})

    @pytest.mark.asyncio
    async def test_cleared_only_after_writes_confirmed(self, local_store, settings, retry_policy):
        remote = GatedRemote()
        tracker = ProgressTracker(local_store, remote, "device-1", settings=settings, retry_policy=retry_policy)
        await tracker.record_completion(None, "hackA")

        task = asyncio.ensure_future(tracker.sign_in("u1"))
        await settle()
        assert tracker.is_reconciling
        assert local_store.get(STORAGE_KEY) is not None

        remote.gate.set()
        result = await task
        assert result.success
        assert local_store.get(STORAGE_KEY) is None
        assert not tracker.is_reconciling

    @pytest.mark.asyncio
    async def test_duplicate_sign_in_joins_first(self, local_store, settings, retry_policy):
        remote = GatedRemote()
        tracker = ProgressTracker(local_store, remote, "device-1", settings=settings, retry_policy=retry_policy)
        await tracker.record_completion(None, "hackA")
        await tracker.record_completion(None, "hackB")

        first = asyncio.ensure_future(tracker.sign_in("u1"))
        await settle()
        second = asyncio.ensure_future(tracker.sign_in("u1"))
        await settle()
        remote.gate.set()
        results = await asyncio.gather(first, second)

        assert results[0] is results[1]
        assert remote.attempts.count("fetch_completion_set") == 1
        assert remote.attempts.count("upsert_completion") == 2

    @pytest.mark.asyncio
    async def test_other_account_waits_then_runs_its_own(self, tracker, remote):
        other = AuthenticatedIdentity(user_id="u2")
        await remote.upsert_completion(other, "f1")
        await tracker.record_completion(None, "hackA")

        first, second = await asyncio.gather(tracker.sign_in("u1"), tracker.sign_in("u2"))

        assert first.merged.subject_id == USER.key
        assert second.merged.subject_id == other.key
        assert first.success and second.success
        assert tracker.identity == other
        assert tracker.completion_set() == frozenset({"f1"})
        assert await remote.fetch_completion_set(USER) == {"hackA"}
        assert not tracker.is_reconciling


class TestReconcileOnAuth:
    """Test reconciling explicit snapshots."""

    @pytest.mark.asyncio
    async def test_explicit_snapshots(self, tracker, remote):
        anonymous = ProgressSnapshot(subject_id="anonymous:device-1", completions={"a": record("anonymous:device-1", "a", T0)})
        remote_snapshot = ProgressSnapshot(subject_id=USER.key)
        result = await tracker.reconcile_on_auth(anonymous, remote_snapshot, user_id="u1")
        assert result.success
        assert remote.completions[USER.key] == {"a": T0}

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, tracker, remote):
        anonymous = ProgressSnapshot(subject_id="anonymous:device-1", routines={"r": routine("r", 2)})
        remote_snapshot = ProgressSnapshot(subject_id=USER.key, routines={"r": routine("r", 4)})
        first = await tracker.reconcile_on_auth(anonymous, remote_snapshot, user_id="u1")
        second = await tracker.reconcile_on_auth(first.merged, remote_snapshot, user_id="u1")
        assert second.merged == first.merged

    @pytest.mark.asyncio
    async def test_unrelated_snapshot_keeps_device_progress(self, tracker, local_store):
        await tracker.record_completion(None, "hackA")
        anonymous = ProgressSnapshot(subject_id="anonymous:other", completions={"a": record("anonymous:other", "a", T0)})

        result = await tracker.reconcile_on_auth(anonymous, ProgressSnapshot(subject_id=USER.key), user_id="u1")

        assert result.success
        assert local_store.get(STORAGE_KEY) is not None
        assert tracker.completion_set() == frozenset({"hackA"})

    @pytest.mark.asyncio
    async def test_device_snapshot_cleared(self, tracker, local_store):
        await tracker.record_completion(None, "hackA")
        await tracker.update_position(None, "morning", 2, 5)

        result = await tracker.reconcile_on_auth(tracker.snapshot(), ProgressSnapshot(subject_id=USER.key), user_id="u1")

        assert result.success
        assert local_store.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_needs_user_while_anonymous(self, tracker):
        empty = ProgressSnapshot(subject_id="x")
        with pytest.raises(ValueError):
            await tracker.reconcile_on_auth(empty, empty)
