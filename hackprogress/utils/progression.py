"""
Progression tiers for hack and routine badges.

Tiers follow how often something has been completed:
- LOCKED: prerequisites not met
- WHITE: available, never completed
- GREEN: once
- BLUE: 2-9 times
- PURPLE: 10-49 times
- ORANGE: 50 or more
"""

from enum import Enum
from typing import Iterable, Optional

COUNT_DISPLAY_CAP = 50


class ProgressionTier(str, Enum):
    LOCKED = "locked"
    WHITE = "white"
    GREEN = "green"
    BLUE = "blue"
    PURPLE = "purple"
    ORANGE = "orange"


def progression_tier(completion_count: Optional[int], is_locked: bool = False) -> ProgressionTier:
    """
    Tier for a single hack.

    Args:
        completion_count: Times completed (None is treated as 0)
        is_locked: Whether prerequisites are unmet

    Returns:
        ProgressionTier
    """
    if is_locked:
        return ProgressionTier.LOCKED
    count = completion_count or 0
    if count <= 0:
        return ProgressionTier.WHITE
    if count == 1:
        return ProgressionTier.GREEN
    if count < 10:
        return ProgressionTier.BLUE
    if count < 50:
        return ProgressionTier.PURPLE
    return ProgressionTier.ORANGE


def routine_progression_tier(completion_counts: Iterable[Optional[int]], all_available: bool = True) -> ProgressionTier:
    """A routine shows the tier of its least completed hack."""
    if not all_available:
        return ProgressionTier.LOCKED
    counts = [c or 0 for c in completion_counts]
    if not counts:
        return ProgressionTier.WHITE
    return progression_tier(min(counts))


def format_completion_count(count: int) -> str:
    """Display string for a completion count, capped at "50"."""
    return str(min(max(count, 0), COUNT_DISPLAY_CAP))
