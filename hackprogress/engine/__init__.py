"""
hackprogress Engine - Prerequisite graphs, unlocks and progress tracking.

Provides:
- Graph building and unlock-order layering
- Unlock evaluation and progress aggregation
- Local/remote progress storage with sign-in reconciliation
- Routine playback with autoplay countdown
- ProgressEngine: the facade presentation code uses
"""

# Errors
from .errors import (
    ProgressEngineError,
    DataIntegrityError,
    PersistenceWriteError,
    RemoteSyncError,
    UnknownContentError,
)

# Graph and evaluation
from .graph import PrerequisiteGraph, LayeringResult, build_graph, resolve_layers, get_layers
from .unlock import is_unlocked, is_level_unlocked, missing_prerequisites, evaluate_unlocks
from .aggregator import percentage, compute_level_progress, compute_routine_progress, completed_level_ids

# Storage
from .retry import RetryPolicy
from .stores import (
    KeyValueStore,
    MemoryKeyValueStore,
    JsonFileKeyValueStore,
    RemoteProgressService,
    InMemoryRemoteService,
)
from .tracker import (
    ProgressBackend,
    LocalProgressBackend,
    RemoteProgressBackend,
    ProgressTracker,
    merge_snapshots,
)

# Playback and facade
from .playback import PlaybackState, RoutinePlayer
from .catalog import load_catalog, catalog_from_dict
from .navigator import ProgressEngine, LevelTreeNode

__all__ = [
    # Errors
    "ProgressEngineError",
    "DataIntegrityError",
    "PersistenceWriteError",
    "RemoteSyncError",
    "UnknownContentError",
    # Graph and evaluation
    "PrerequisiteGraph",
    "LayeringResult",
    "build_graph",
    "resolve_layers",
    "get_layers",
    "is_unlocked",
    "is_level_unlocked",
    "missing_prerequisites",
    "evaluate_unlocks",
    "percentage",
    "compute_level_progress",
    "compute_routine_progress",
    "completed_level_ids",
    # Storage
    "RetryPolicy",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "RemoteProgressService",
    "InMemoryRemoteService",
    "ProgressBackend",
    "LocalProgressBackend",
    "RemoteProgressBackend",
    "ProgressTracker",
    "merge_snapshots",
    # Playback and facade
    "PlaybackState",
    "RoutinePlayer",
    "load_catalog",
    "catalog_from_dict",
    "ProgressEngine",
    "LevelTreeNode",
]
