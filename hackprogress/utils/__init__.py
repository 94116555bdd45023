"""hackprogress utilities."""

from .progression import (
    ProgressionTier,
    progression_tier,
    routine_progression_tier,
    format_completion_count,
)

__all__ = [
    "ProgressionTier",
    "progression_tier",
    "routine_progression_tier",
    "format_completion_count",
]
