"""
Graph builder and layering resolver for prerequisite graphs.

Edges run prerequisite -> dependent (a prerequisite must be completed
first). Layering peels the graph one layer at a time, Kahn-style:

- Layer 0 holds nodes with no known prerequisites
- Each later layer holds nodes whose prerequisites all sit in earlier layers
- A pass that places nothing ends the loop; whatever is left is on a cycle
  or stuck behind one and is reported, never retried
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import networkx as nx

from hackprogress.schemas import ContentNode

from .errors import DataIntegrityError

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Graph Builder
# -----------------------------------------------------------------------------

@dataclass
class PrerequisiteGraph:
    """Adjacency structure plus the references that matched no node."""
    graph: nx.DiGraph
    order: list[str]  # node ids in input order
    dangling: dict[str, frozenset[str]] = field(default_factory=dict)

    def prerequisites_of(self, node_id: str) -> list[str]:
        return list(self.graph.predecessors(node_id))

    def dependents_of(self, node_id: str) -> list[str]:
        return list(self.graph.successors(node_id))


def build_graph(
    nodes: Iterable[ContentNode],
    external_ids: Optional[Iterable[str]] = None,
) -> PrerequisiteGraph:
    """
    Build a directed prerequisite graph from content nodes.

    Args:
        nodes: Nodes to place in the graph
        external_ids: Ids that exist elsewhere in the catalog but are not part
            of this graph. References to them are satisfied silently instead
            of being reported as dangling.

    Returns:
        PrerequisiteGraph with edges prerequisite -> dependent
    """
    node_list = list(nodes)
    known = {node.id for node in node_list}
    external = set(external_ids or ()) - known

    G = nx.DiGraph()
    dangling: dict[str, frozenset[str]] = {}

    for node in node_list:
        G.add_node(node.id, kind=node.kind.value)

    for node in node_list:
        missing = set()
        for prereq_id in node.required_prerequisite_ids:
            if prereq_id in known:
                G.add_edge(prereq_id, node.id)
            elif prereq_id not in external:
                missing.add(prereq_id)
        if missing:
            dangling[node.id] = frozenset(missing)

    for node_id, missing in dangling.items():
        logger.warning(f"Node {node_id} references unknown prerequisites {sorted(missing)}; treating as satisfied")

    return PrerequisiteGraph(graph=G, order=[node.id for node in node_list], dangling=dangling)


# -----------------------------------------------------------------------------
# Layering Resolver
# -----------------------------------------------------------------------------

@dataclass
class LayeringResult:
    """Unlock-order layers and the integrity problems found while peeling."""
    layers: list[list[str]]
    cycle_members: frozenset[str] = frozenset()
    blocked: frozenset[str] = frozenset()  # not on a cycle, but depends on one
    dangling: dict[str, frozenset[str]] = field(default_factory=dict)

    @property
    def excluded(self) -> frozenset[str]:
        return self.cycle_members | self.blocked

    @property
    def is_complete(self) -> bool:
        return not self.excluded

    @property
    def has_warnings(self) -> bool:
        return bool(self.dangling) or not self.is_complete

    def layer_of(self, node_id: str) -> Optional[int]:
        for index, layer in enumerate(self.layers):
            if node_id in layer:
                return index
        return None

    def raise_for_integrity(self):
        """Raise DataIntegrityError if any node had to be excluded."""
        if self.is_complete:
            return
        raise DataIntegrityError(
            f"Prerequisite cycle: {len(self.cycle_members)} node(s) on a cycle, "
            f"{len(self.blocked)} blocked behind one: {sorted(self.excluded)}",
            cycle_members=self.cycle_members,
            blocked=self.blocked,
            dangling=self.dangling,
            layers=self.layers,
        )


def resolve_layers(prereq_graph: PrerequisiteGraph) -> LayeringResult:
    """
    Order nodes into layers such that every prerequisite is in an earlier layer.

    Within a layer, nodes keep their input order. Never raises; cycles are
    reported on the result.
    """
    G = prereq_graph.graph
    placed: set[str] = set()
    remaining = list(prereq_graph.order)
    layers: list[list[str]] = []

    while remaining:
        layer = [
            node_id for node_id in remaining
            if all(prereq in placed for prereq in G.predecessors(node_id))
        ]
        if not layer:
            break
        logger.debug(f"Layer {len(layers)}: {layer}")
        layers.append(layer)
        placed.update(layer)
        remaining = [node_id for node_id in remaining if node_id not in placed]

    cycle_members: set[str] = set()
    if remaining:
        stuck = G.subgraph(remaining)
        for component in nx.strongly_connected_components(stuck):
            if len(component) > 1:
                cycle_members.update(component)
        if cycle_members:
            example = nx.find_cycle(stuck.subgraph(cycle_members))
            logger.warning(f"Prerequisite cycle detected, e.g. {' -> '.join(u for u, _ in example)}")

    blocked = set(remaining) - cycle_members
    if remaining:
        logger.warning(f"Excluded {len(remaining)} node(s) from layering: {sorted(remaining)}")

    return LayeringResult(
        layers=layers,
        cycle_members=frozenset(cycle_members),
        blocked=frozenset(blocked),
        dangling=dict(prereq_graph.dangling),
    )


def get_layers(
    nodes: Iterable[ContentNode],
    strict: bool = False,
    external_ids: Optional[Iterable[str]] = None,
) -> list[list[str]]:
    """
    Build the graph and return its layers.

    Args:
        nodes: Nodes to layer
        strict: Raise DataIntegrityError when nodes were excluded instead of
            only logging it
        external_ids: See build_graph

    Returns:
        List of layers, each a list of node ids
    """
    result = resolve_layers(build_graph(nodes, external_ids=external_ids))
    if strict:
        result.raise_for_integrity()
    return result.layers
