"""
Content catalog schemas for hackprogress.

Defines Pydantic models for authored content including:
- Content nodes (hacks and levels) with prerequisite edges
- Routines (ordered hack sequences)
- The catalog that groups them with id lookups

Content is authored elsewhere; the engine only reads it.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class NodeKind(str, Enum):
    HACK = "hack"
    LEVEL = "level"


# -----------------------------------------------------------------------------
# Nodes
# -----------------------------------------------------------------------------

class ContentNode(BaseModel):
    """
    A hack or level in the prerequisite graph.

    For hacks, required_prerequisite_ids are hack ids; for levels they are
    level ids. A hack belongs to at most one parent level.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    kind: NodeKind
    name: str = ""
    required_prerequisite_ids: frozenset[str] = frozenset()
    parent_level_id: Optional[str] = None
    is_required_within_parent: bool = True

    @field_validator('required_prerequisite_ids', mode='before')
    @classmethod
    def coerce_prerequisites(cls, v):
        if v is None:
            return frozenset()
        return frozenset(v)

    @model_validator(mode='after')
    def no_self_prerequisite(self):
        if self.id in self.required_prerequisite_ids:
            raise ValueError(f"Node {self.id!r} lists itself as a prerequisite")
        if self.kind == NodeKind.LEVEL and self.parent_level_id is not None:
            raise ValueError(f"Level {self.id!r} cannot have a parent level")
        return self

    @property
    def is_level(self) -> bool:
        return self.kind == NodeKind.LEVEL


class Routine(BaseModel):
    """Ordered sequence of hacks played back one after another."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    step_ids: list[str] = Field(..., min_length=1)  # hack ids, playback order

    @property
    def total_steps(self) -> int:
        return len(self.step_ids)


# -----------------------------------------------------------------------------
# Catalog
# -----------------------------------------------------------------------------

class ContentCatalog(BaseModel):
    """All hacks, levels and routines known to the engine."""
    nodes: list[ContentNode] = []
    routines: list[Routine] = []

    @model_validator(mode='after')
    def unique_ids(self):
        seen: set[str] = set()
        for item_id in [n.id for n in self.nodes] + [r.id for r in self.routines]:
            if item_id in seen:
                raise ValueError(f"Duplicate content id: {item_id!r}")
            seen.add(item_id)
        return self

    @property
    def node_map(self) -> dict[str, ContentNode]:
        return {node.id: node for node in self.nodes}

    @property
    def routine_map(self) -> dict[str, Routine]:
        return {routine.id: routine for routine in self.routines}

    @property
    def levels(self) -> list[ContentNode]:
        return [n for n in self.nodes if n.kind == NodeKind.LEVEL]

    @property
    def hacks(self) -> list[ContentNode]:
        return [n for n in self.nodes if n.kind == NodeKind.HACK]

    def get_node(self, node_id: str) -> Optional[ContentNode]:
        return self.node_map.get(node_id)

    def get_routine(self, routine_id: str) -> Optional[Routine]:
        return self.routine_map.get(routine_id)

    def hacks_in_level(self, level_id: str) -> list[ContentNode]:
        """Hacks whose parent is the given level, in catalog order."""
        return [n for n in self.hacks if n.parent_level_id == level_id]
