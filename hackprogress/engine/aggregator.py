"""
Progress aggregation for levels and routines.

Percentages are floored integers in [0, 100]; an empty denominator gives 0,
so a level with no required hacks is never "completed".
"""

from typing import Iterable

from hackprogress.schemas import ContentCatalog, ContentNode, LevelProgress, Progress, Routine


def percentage(completed: int, total: int) -> int:
    """floor(completed / total * 100), or 0 when total is 0."""
    if total <= 0:
        return 0
    value = (completed * 100) // total
    return max(0, min(100, value))


def required_hacks(level: ContentNode, hacks: Iterable[ContentNode]) -> list[ContentNode]:
    """Hacks that count toward completing the level."""
    return [
        hack for hack in hacks
        if hack.parent_level_id == level.id and hack.is_required_within_parent
    ]


def compute_level_progress(
    level: ContentNode,
    hacks: Iterable[ContentNode],
    completion_set: Iterable[str],
    is_unlocked: bool = True,
) -> LevelProgress:
    """
    Compute completion for one level.

    Args:
        level: The level node
        hacks: Candidate hacks (anything not in the level is ignored)
        completion_set: Completed node ids
        is_unlocked: Unlock state to carry on the result

    Returns:
        LevelProgress with floored percentage
    """
    completed_ids = set(completion_set)
    required = {hack.id for hack in required_hacks(level, hacks)}
    completed = len(required & completed_ids)
    pct = percentage(completed, len(required))

    return LevelProgress(
        level_id=level.id,
        completed_required_count=completed,
        total_required_count=len(required),
        is_unlocked=is_unlocked,
        is_completed=pct == 100,
        percentage=pct,
    )


def compute_routine_progress(routine: Routine, completed_step_ids: Iterable[str]) -> Progress:
    steps = set(routine.step_ids)
    completed = len(steps & set(completed_step_ids))
    pct = percentage(completed, len(steps))
    return Progress(
        percentage=pct,
        completed_count=completed,
        total_count=len(steps),
        is_completed=pct == 100,
    )


def level_progress_as_progress(progress: LevelProgress) -> Progress:
    return Progress(
        percentage=progress.percentage,
        completed_count=progress.completed_required_count,
        total_count=progress.total_required_count,
        is_completed=progress.is_completed,
    )


def completed_level_ids(catalog: ContentCatalog, completion_set: Iterable[str]) -> set[str]:
    """Levels with 100% of their required hacks completed."""
    completed_ids = set(completion_set)
    hacks = catalog.hacks
    return {
        level.id for level in catalog.levels
        if compute_level_progress(level, hacks, completed_ids).is_completed
    }
