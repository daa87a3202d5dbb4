"""Create character cards and world entries mentioned by chapter outlines.

Chapter nodes store their outline item as JSON. ``characters`` may hold plain
strings (``"role: name"`` or just ``"name"``) or ``{name, category, fields}``
objects; ``worldviews`` holds objects only. Names are de-duplicated across
nodes and against what the manuscript already has.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from novelforge_schemas import Character, OutlineLevel, OutlineNode, WorldEntry

from ..interfaces import ManuscriptStore, OutlineRepository

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "uncategorized"
EXTRACTED_FIELDS = {"source": "extracted from outline"}

_ROLE_SEPARATOR_RE = re.compile(r"[:：]")


@dataclass
class CardSeed:
    name: str
    category: str
    fields: dict[str, Any]


@dataclass
class ExtractionResult:
    characters_created: int = 0
    world_entries_created: int = 0


def character_seed(item: Any) -> Optional[CardSeed]:
    if isinstance(item, str):
        parts = _ROLE_SEPARATOR_RE.split(item, maxsplit=1)
        name = (parts[1] if len(parts) > 1 else parts[0]).strip()
        if not name:
            return None
        return CardSeed(name=name, category=DEFAULT_CATEGORY, fields=dict(EXTRACTED_FIELDS))
    return object_seed(item)


def object_seed(item: Any) -> Optional[CardSeed]:
    if not isinstance(item, dict):
        return None
    name = str(item.get("name") or "").strip()
    if not name:
        return None
    fields = item.get("fields")
    return CardSeed(
        name=name,
        category=str(item.get("category") or DEFAULT_CATEGORY),
        fields=dict(fields) if isinstance(fields, dict) else {},
    )


def collect_seeds(nodes: Iterable[OutlineNode]) -> tuple[dict[str, CardSeed], dict[str, CardSeed]]:
    """First mention of each name wins; unparsable nodes are skipped."""

    characters: dict[str, CardSeed] = {}
    world: dict[str, CardSeed] = {}
    for node in nodes:
        if node.level is not OutlineLevel.CHAPTER:
            continue
        try:
            payload = json.loads(node.content)
        except (TypeError, ValueError):
            logger.warning("Skipping chapter node with unparsable payload", extra={"node_id": node.id})
            continue
        if not isinstance(payload, dict):
            continue
        for item in payload.get("characters") or []:
            seed = character_seed(item)
            if seed is not None:
                characters.setdefault(seed.name, seed)
        for item in payload.get("worldviews") or []:
            seed = object_seed(item)
            if seed is not None:
                world.setdefault(seed.name, seed)
    return characters, world


async def extract_entities(
    outline: OutlineRepository,
    manuscripts: ManuscriptStore,
    task_id: int,
    novel_id: int,
) -> ExtractionResult:
    nodes = await outline.list_outline_nodes(task_id)
    character_seeds, world_seeds = collect_seeds(nodes)
    result = ExtractionResult()

    existing_characters = {c.name for c in await manuscripts.list_characters(novel_id)}
    order = len(existing_characters)
    for name, seed in character_seeds.items():
        if name in existing_characters:
            continue
        try:
            await manuscripts.create_character(
                Character(novel_id=novel_id, name=name, category=seed.category, fields=seed.fields, order=order)
            )
        except Exception:
            logger.exception("Failed to create character", extra={"character": name})
            continue
        existing_characters.add(name)
        order += 1
        result.characters_created += 1

    existing_world = {e.name for e in await manuscripts.list_world_entries(novel_id)}
    order = len(existing_world)
    for name, seed in world_seeds.items():
        if name in existing_world:
            continue
        try:
            await manuscripts.create_world_entry(
                WorldEntry(novel_id=novel_id, name=name, category=seed.category, fields=seed.fields, order=order)
            )
        except Exception:
            logger.exception("Failed to create world entry", extra={"world_entry": name})
            continue
        existing_world.add(name)
        order += 1
        result.world_entries_created += 1

    logger.info(
        "Outline extraction finished",
        extra={
            "task_id": task_id,
            "characters_created": result.characters_created,
            "world_entries_created": result.world_entries_created,
        },
    )
    return result
