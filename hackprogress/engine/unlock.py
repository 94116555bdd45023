"""
Unlock evaluation.

Everything here is a pure function of its arguments: no storage reads, so
results can be cached on the completion set. Unlocking is monotonic: adding
a completion never locks a node that was unlocked.
"""

from typing import Iterable, Optional

from hackprogress.schemas import ContentCatalog, ContentNode

from .aggregator import completed_level_ids


def _blocking_prerequisites(
    node: ContentNode,
    satisfied: frozenset[str] | set[str],
    known_ids: Optional[Iterable[str]],
) -> list[str]:
    known = set(known_ids) if known_ids is not None else None
    missing = []
    for prereq_id in sorted(node.required_prerequisite_ids):
        if known is not None and prereq_id not in known:
            continue  # dangling reference counts as satisfied
        if prereq_id not in satisfied:
            missing.append(prereq_id)
    return missing


def missing_prerequisites(
    node: ContentNode,
    completion_set: Iterable[str],
    known_ids: Optional[Iterable[str]] = None,
) -> list[str]:
    """Prerequisite ids that still block the node, sorted."""
    return _blocking_prerequisites(node, set(completion_set), known_ids)


def is_unlocked(
    node: ContentNode,
    completion_set: Iterable[str],
    parent_level_unlocked: bool = True,
    known_ids: Optional[Iterable[str]] = None,
) -> bool:
    """
    Decide whether a node is accessible.

    Args:
        node: Hack or level to check
        completion_set: Ids the learner has completed. For levels this is the
            set of completed level ids.
        parent_level_unlocked: Unlock state of the node's parent level;
            ignored when the node has no parent
        known_ids: When given, prerequisite ids outside it are dangling and
            do not block

    Returns:
        True if (no parent or parent unlocked) and all prerequisites completed
    """
    if node.parent_level_id is not None and not parent_level_unlocked:
        return False
    return not _blocking_prerequisites(node, set(completion_set), known_ids)


def is_level_unlocked(
    level: ContentNode,
    completed_level_ids: Iterable[str],
    known_ids: Optional[Iterable[str]] = None,
) -> bool:
    """A level unlocks once every prerequisite level is 100% complete."""
    return is_unlocked(level, completed_level_ids, known_ids=known_ids)


def evaluate_unlocks(catalog: ContentCatalog, completion_set: Iterable[str]) -> dict[str, bool]:
    """
    Unlock state for every node in the catalog.

    Levels are resolved first from level completion; hacks then combine their
    own prerequisites with their parent level's state.
    """
    completed = set(completion_set)
    known_ids = {node.id for node in catalog.nodes}
    done_levels = completed_level_ids(catalog, completed)

    states: dict[str, bool] = {}
    for level in catalog.levels:
        states[level.id] = is_level_unlocked(level, done_levels, known_ids=known_ids)

    for hack in catalog.hacks:
        parent_unlocked = True
        if hack.parent_level_id is not None:
            # A parent id missing from the catalog is dangling: do not block on it
            parent_unlocked = states.get(hack.parent_level_id, True)
        states[hack.id] = is_unlocked(hack, completed, parent_unlocked, known_ids=known_ids)

    return states
