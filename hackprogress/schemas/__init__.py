"""
hackprogress Schemas - Pydantic models for the progression engine.

This module exports all schema classes for:
- Content: hacks, levels, routines and the catalog
- Progress: identities, completion records, snapshots, reconciliation
"""

# Content schemas
from .content import (
    NodeKind,
    ContentNode,
    Routine,
    ContentCatalog,
)

# Progress schemas
from .progress import (
    AnonymousIdentity,
    AuthenticatedIdentity,
    Identity,
    CompletionRecord,
    RoutineProgress,
    LevelProgress,
    Progress,
    ProgressSnapshot,
    ReconciliationConflict,
    ReconciliationResult,
    LocalProgressSummary,
    utcnow,
)

__all__ = [
    # Content
    'NodeKind',
    'ContentNode',
    'Routine',
    'ContentCatalog',
    # Progress
    'AnonymousIdentity',
    'AuthenticatedIdentity',
    'Identity',
    'CompletionRecord',
    'RoutineProgress',
    'LevelProgress',
    'Progress',
    'ProgressSnapshot',
    'ReconciliationConflict',
    'ReconciliationResult',
    'LocalProgressSummary',
    'utcnow',
]
