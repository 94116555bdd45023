"""
Progress tracking schemas for hackprogress.

Defines Pydantic models for learner progress including:
- Identities (anonymous device vs. authenticated account)
- Completion records and per-routine playback progress
- Derived level/routine progress
- Snapshots and reconciliation results
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Identity
# -----------------------------------------------------------------------------

class AnonymousIdentity(BaseModel):
    """Progress scoped to one device before an account exists."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["anonymous"] = "anonymous"
    device_key: str = Field(..., min_length=1)

    @property
    def key(self) -> str:
        return f"anonymous:{self.device_key}"


class AuthenticatedIdentity(BaseModel):
    """Progress owned by a signed-in account."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["authenticated"] = "authenticated"
    user_id: str = Field(..., min_length=1)

    @property
    def key(self) -> str:
        return f"user:{self.user_id}"


Identity = Union[AnonymousIdentity, AuthenticatedIdentity]


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

class CompletionRecord(BaseModel):
    subject_id: str
    node_id: str
    completed_at: Optional[datetime] = None  # None when the remote only reports the id
    view_count: int = Field(default=0, ge=0)
    completion_count: int = Field(default=1, ge=1)
    last_completed_at: Optional[datetime] = None

    @property
    def latest_completion(self) -> Optional[datetime]:
        return self.last_completed_at or self.completed_at


class RoutineProgress(BaseModel):
    routine_id: str
    current_position: int = Field(default=0, ge=0)
    total_steps: int = Field(..., ge=1)
    completed_step_ids: set[str] = set()
    autoplay_enabled: bool = True
    started_at: datetime = Field(default_factory=utcnow)
    last_played_at: datetime = Field(default_factory=utcnow)
    completion_count: int = Field(default=0, ge=0)
    last_completed_at: Optional[datetime] = None

    @model_validator(mode='after')
    def position_in_range(self):
        if self.current_position >= self.total_steps:
            raise ValueError(
                f"Position {self.current_position} out of range for {self.total_steps} steps"
            )
        return self


class LevelProgress(BaseModel):
    level_id: str
    completed_required_count: int = Field(..., ge=0)
    total_required_count: int = Field(..., ge=0)
    is_unlocked: bool
    is_completed: bool
    percentage: int = Field(..., ge=0, le=100)

    @model_validator(mode='after')
    def completed_within_total(self):
        if self.completed_required_count > self.total_required_count:
            raise ValueError("completed_required_count exceeds total_required_count")
        return self


class Progress(BaseModel):
    """Shape returned to presentation code for a level or routine."""
    percentage: int = Field(..., ge=0, le=100)
    completed_count: int = Field(..., ge=0)
    total_count: int = Field(..., ge=0)
    is_completed: bool


# -----------------------------------------------------------------------------
# Snapshots and reconciliation
# -----------------------------------------------------------------------------

class ProgressSnapshot(BaseModel):
    """Everything recorded for one identity."""
    subject_id: str
    completions: dict[str, CompletionRecord] = {}
    routines: dict[str, RoutineProgress] = {}
    views: dict[str, int] = {}  # node_id -> view count, completed or not

    @property
    def completion_ids(self) -> frozenset[str]:
        return frozenset(self.completions)

    @property
    def is_empty(self) -> bool:
        return not self.completions and not self.routines and not self.views


class ReconciliationConflict(BaseModel):
    """A value both sides disagreed on, and what the merge kept."""
    kind: Literal[
        "routine_position", "routine_total", "autoplay", "completed_at", "view_count", "completion_count",
    ]
    item_id: str
    anonymous_value: Any = None
    remote_value: Any = None
    resolved_value: Any = None


class ReconciliationResult(BaseModel):
    success: bool
    merged: ProgressSnapshot
    conflicts: list[ReconciliationConflict] = []
    error: Optional[str] = None


class LocalProgressSummary(BaseModel):
    completed_hacks: int = 0
    hacks_viewed: int = 0
    routines_started: int = 0
    has_progress: bool = False
