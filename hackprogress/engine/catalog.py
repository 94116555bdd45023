"""
Content catalog loader.

Reads a YAML or JSON catalog file with three lists:

    levels:
      - id: foundation
        name: Foundation
        prerequisites: []
    hacks:
      - id: tinfoil-jig
        level: foundation
        prerequisites: [measure-twice]
        required: true
    routines:
      - id: morning-setup
        steps: [measure-twice, tinfoil-jig]

Schema field names (required_prerequisite_ids, parent_level_id,
is_required_within_parent, step_ids) are accepted as well.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from hackprogress.schemas import ContentCatalog, ContentNode, NodeKind, Routine

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = {".yaml", ".yml", ".json"}

# short key -> schema field
NODE_ALIASES = {
    "prerequisites": "required_prerequisite_ids",
    "level": "parent_level_id",
    "required": "is_required_within_parent",
}
ROUTINE_ALIASES = {"steps": "step_ids"}


def _apply_aliases(entry: dict[str, Any], aliases: dict[str, str]) -> dict[str, Any]:
    return {aliases.get(key, key): value for key, value in entry.items()}


def catalog_from_dict(data: dict[str, Any]) -> ContentCatalog:
    """
    Build a catalog from already-parsed data.

    Args:
        data: Dict with optional "levels", "hacks" and "routines" lists

    Returns:
        Validated ContentCatalog

    Raises:
        pydantic.ValidationError: If an entry is malformed or ids collide
    """
    nodes = []
    for entry in data.get("levels") or []:
        nodes.append(ContentNode(kind=NodeKind.LEVEL, **_apply_aliases(entry, NODE_ALIASES)))
    for entry in data.get("hacks") or []:
        nodes.append(ContentNode(kind=NodeKind.HACK, **_apply_aliases(entry, NODE_ALIASES)))

    routines = [
        Routine(**_apply_aliases(entry, ROUTINE_ALIASES))
        for entry in data.get("routines") or []
    ]
    return ContentCatalog(nodes=nodes, routines=routines)


def load_catalog(path: str | Path) -> ContentCatalog:
    """
    Load a catalog file.

    Args:
        path: .yaml, .yml or .json file

    Returns:
        Validated ContentCatalog

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the suffix is not supported
        yaml.YAMLError / json.JSONDecodeError: If parsing fails
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Catalog not found: {file_path}")

    suffix = file_path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ValueError(f"Unsupported catalog format: {suffix}")

    with open(file_path, "r", encoding="utf-8") as f:
        data = json.load(f) if suffix == ".json" else yaml.safe_load(f)

    catalog = catalog_from_dict(data or {})
    logger.info(
        f"Loaded catalog {file_path.name}: {len(catalog.levels)} levels, "
        f"{len(catalog.hacks)} hacks, {len(catalog.routines)} routines"
    )
    return catalog
