"""
ProgressEngine - The interface presentation code talks to.

Provides:
- Unlock-order layers for levels and for the hacks inside a level
- Unlock checks with missing-prerequisite lists
- Level and routine progress
- Recording completions, views and routine positions for the active identity
- Sign-in reconciliation
- A level tree with lock/completion status for map views
- Repeat-completion counts, cooldowns and progression tiers
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from hackprogress.config import EngineSettings
from hackprogress.schemas import (
    ContentCatalog,
    ContentNode,
    LevelProgress,
    Progress,
    ReconciliationResult,
    Routine,
)
from hackprogress.utils.progression import ProgressionTier, progression_tier, routine_progression_tier

from .aggregator import (
    compute_level_progress,
    compute_routine_progress,
    completed_level_ids,
    level_progress_as_progress,
)
from .errors import UnknownContentError
from .graph import get_layers
from .playback import RoutinePlayer
from .tracker import ProgressTracker
from .unlock import evaluate_unlocks, missing_prerequisites

logger = logging.getLogger(__name__)


@dataclass
class LevelTreeNode:
    """Level with status indicators for a map view."""
    level_id: str
    name: str
    prerequisites: list[str]
    children: list[str]  # levels that list this one as a prerequisite
    is_locked: bool
    is_completed: bool
    percentage: int
    completed_count: int = 0
    total_count: int = 0
    hack_ids: list[str] = field(default_factory=list)


class ProgressEngine:
    """
    Combine the content catalog with the progress tracker.

    Reads always reflect the tracker's active identity. Unlock states are
    cached on the completion set, so repeated checks between writes are free.
    """

    def __init__(self, catalog: ContentCatalog, tracker: ProgressTracker, settings: Optional[EngineSettings] = None):
        """
        Initialize engine.

        Args:
            catalog: Content to evaluate
            tracker: Progress storage for the active identity
            settings: Engine settings (default: the tracker's)
        """
        self.catalog = catalog
        self.tracker = tracker
        self.settings = settings or tracker.settings
        self._nodes = catalog.node_map
        self._routines = catalog.routine_map
        self._unlock_cache: tuple[frozenset[str], dict[str, bool]] | None = None

    @property
    def saves_locally(self) -> bool:
        """Show the "progress saved locally" indicator."""
        return self.tracker.saves_locally

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _node(self, node_id: str) -> ContentNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownContentError(node_id)
        return node

    def _routine(self, routine_id: str) -> Routine:
        routine = self._routines.get(routine_id)
        if routine is None:
            raise UnknownContentError(routine_id)
        return routine

    def _level(self, level_id: str) -> ContentNode:
        node = self._node(level_id)
        if not node.is_level:
            raise UnknownContentError(level_id)
        return node

    # -------------------------------------------------------------------------
    # Layers
    # -------------------------------------------------------------------------

    def get_layers(self, nodes: Optional[Iterable[ContentNode]] = None, strict: bool = False) -> list[list[str]]:
        """Unlock-order layers of the given nodes (default: the whole catalog)."""
        node_list = list(nodes) if nodes is not None else self.catalog.nodes
        layered_ids = {node.id for node in node_list}
        external = [node_id for node_id in self._nodes if node_id not in layered_ids]
        return get_layers(node_list, strict=strict, external_ids=external)

    def level_layers(self, strict: bool = False) -> list[list[str]]:
        return self.get_layers(self.catalog.levels, strict=strict)

    def hack_layers(self, level_id: str, strict: bool = False) -> list[list[str]]:
        self._level(level_id)
        return self.get_layers(self.catalog.hacks_in_level(level_id), strict=strict)

    # -------------------------------------------------------------------------
    # Unlocks
    # -------------------------------------------------------------------------

    def unlock_states(self) -> dict[str, bool]:
        completion_set = self.tracker.completion_set()
        if self._unlock_cache is None or self._unlock_cache[0] != completion_set:
            self._unlock_cache = (completion_set, evaluate_unlocks(self.catalog, completion_set))
        return self._unlock_cache[1]

    def is_unlocked(self, node_id: str) -> bool:
        self._node(node_id)
        return self.unlock_states()[node_id]

    def missing_prerequisites(self, node_id: str) -> list[str]:
        """
        Ids still blocking a node.

        For a level these are incomplete prerequisite levels; for a hack,
        incomplete prerequisite hacks plus its parent level if that is locked.
        """
        node = self._node(node_id)
        completion_set = self.tracker.completion_set()
        if node.is_level:
            return missing_prerequisites(
                node, completed_level_ids(self.catalog, completion_set), known_ids=self._nodes
            )

        missing = missing_prerequisites(node, completion_set, known_ids=self._nodes)
        parent_id = node.parent_level_id
        if parent_id is not None and not self.unlock_states().get(parent_id, True):
            missing.append(parent_id)
        return missing

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def level_progress(self, level_id: str) -> LevelProgress:
        level = self._level(level_id)
        return compute_level_progress(
            level,
            self.catalog.hacks,
            self.tracker.completion_set(),
            is_unlocked=self.unlock_states()[level_id],
        )

    def routine_progress(self, routine_id: str) -> Progress:
        routine = self._routine(routine_id)
        saved = self.tracker.routine_progress(None, routine_id)
        return compute_routine_progress(routine, saved.completed_step_ids if saved is not None else ())

    def get_progress(self, item_id: str) -> Progress:
        """Progress of a level or routine."""
        if item_id in self._routines:
            return self.routine_progress(item_id)
        return level_progress_as_progress(self.level_progress(item_id))

    def level_tree(self) -> list[LevelTreeNode]:
        """Every level with prerequisites, dependents and status, in catalog order."""
        states = self.unlock_states()
        completion_set = self.tracker.completion_set()
        hacks = self.catalog.hacks
        levels = self.catalog.levels

        children: dict[str, list[str]] = {level.id: [] for level in levels}
        for level in levels:
            for prereq_id in sorted(level.required_prerequisite_ids):
                if prereq_id in children:
                    children[prereq_id].append(level.id)

        tree = []
        for level in levels:
            progress = compute_level_progress(level, hacks, completion_set)
            tree.append(LevelTreeNode(
                level_id=level.id,
                name=level.name,
                prerequisites=sorted(level.required_prerequisite_ids),
                children=children[level.id],
                is_locked=not states[level.id],
                is_completed=progress.is_completed,
                percentage=progress.percentage,
                completed_count=progress.completed_required_count,
                total_count=progress.total_required_count,
                hack_ids=[hack.id for hack in self.catalog.hacks_in_level(level.id)],
            ))
        return tree

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def record_completion(self, node_id: str) -> bool:
        self._node(node_id)
        return await self.tracker.record_completion(None, node_id)

    async def record_view(self, node_id: str) -> bool:
        self._node(node_id)
        return await self.tracker.record_view(None, node_id)

    async def update_position(self, routine_id: str, index: int) -> bool:
        routine = self._routine(routine_id)
        return await self.tracker.update_position(None, routine_id, index, routine.total_steps)

    async def set_autoplay(self, routine_id: str, enabled: bool) -> bool:
        routine = self._routine(routine_id)
        return await self.tracker.set_autoplay(None, routine_id, enabled, routine.total_steps)

    async def reconcile_on_sign_in(self, user_id: str) -> ReconciliationResult:
        result = await self.tracker.sign_in(user_id)
        if not result.success:
            logger.warning(f"Sign-in reconciliation for {user_id} failed; anonymous progress kept")
        return result

    def sign_out(self):
        self.tracker.sign_out()

    def player(self, routine_id: str, **kwargs) -> RoutinePlayer:
        """Playback state machine for a routine, writing for the active identity."""
        kwargs.setdefault("settings", self.settings)
        return RoutinePlayer(self._routine(routine_id), self.tracker, **kwargs)

    async def open_player(self, routine_id: str, index: Optional[int] = None, **kwargs) -> RoutinePlayer:
        """Player already started where the routine was left off, on this or another device."""
        player = self.player(routine_id, **kwargs)
        await player.open(index)
        return player

    # -------------------------------------------------------------------------
    # Repeat completions
    # -------------------------------------------------------------------------

    def completion_count(self, node_id: str) -> int:
        self._node(node_id)
        return self.tracker.completion_count(None, node_id)

    def routine_completion_count(self, routine_id: str) -> int:
        self._routine(routine_id)
        return self.tracker.routine_completion_count(None, routine_id)

    def can_complete(self, node_id: str, now: Optional[datetime] = None) -> bool:
        self._node(node_id)
        return self.tracker.can_complete(None, node_id, now)

    def cooldown_minutes(self, node_id: str, now: Optional[datetime] = None) -> int:
        self._node(node_id)
        return self.tracker.cooldown_minutes(None, node_id, now)

    def progression_tier(self, node_id: str) -> ProgressionTier:
        """Badge tier for a hack from its completion count and lock state."""
        return progression_tier(self.completion_count(node_id), is_locked=not self.is_unlocked(node_id))

    def routine_progression_tier(self, routine_id: str) -> ProgressionTier:
        """Badge tier for a routine: that of its least completed step."""
        routine = self._routine(routine_id)
        states = self.unlock_states()
        return routine_progression_tier(
            [self.tracker.completion_count(None, step_id) for step_id in routine.step_ids],
            all_available=all(states.get(step_id, True) for step_id in routine.step_ids),
        )
