"""``{{@::type::id}}`` references expanded into manuscript content."""

from __future__ import annotations

import logging
import re
from typing import Optional

from novelforge_schemas import Chapter, ChapterRefMode, FieldCard
from novelforge_schemas.utils.validators import strip_html

from ..interfaces import ManuscriptStore

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(
    r"\{\{@::(character|world|memo|chapter|人物卡|世界观|备忘录|章节)::(\d+)(?:::(full|summary))?\}\}",
    re.IGNORECASE,
)

_TYPE_ALIASES = {
    "人物卡": "character",
    "世界观": "world",
    "备忘录": "memo",
    "章节": "chapter",
}

SUMMARY_FALLBACK_CHARS = 500


def render_card(label: str, card: FieldCard) -> str:
    lines = card.field_lines()
    header = f"【{label}: {card.name}】"
    return "\n".join([header, *lines]) if lines else header


def render_chapter(chapter: Chapter, mode: ChapterRefMode) -> str:
    if mode is ChapterRefMode.SUMMARY:
        if chapter.summary and chapter.summary.strip():
            return f"【Chapter summary: {chapter.title}】\n{strip_html(chapter.summary)}"
        content = chapter.content or ""
        preview = content[:SUMMARY_FALLBACK_CHARS]
        if len(content) > SUMMARY_FALLBACK_CHARS:
            preview += "..."
        return (
            f"【Chapter summary: {chapter.title} (no summary, first {SUMMARY_FALLBACK_CHARS} characters)】\n"
            f"{strip_html(preview)}"
        )
    return f"【Chapter: {chapter.title}】\n{strip_html(chapter.content)}"


class MentionLoader:
    """Loads mentioned entities, scoped to one manuscript."""

    def __init__(self, store: ManuscriptStore) -> None:
        self._store = store

    async def render(self, kind: str, entity_id: int, novel_id: int, mode: ChapterRefMode) -> Optional[str]:
        """Return the rendered reference, or ``None`` when nothing matches in the novel."""

        if kind == "character":
            character = await self._store.get_character(entity_id)
            if character is None or character.novel_id != novel_id:
                return None
            return render_card("Character", character)
        if kind == "world":
            entry = await self._store.get_world_entry(entity_id)
            if entry is None or entry.novel_id != novel_id:
                return None
            return render_card("World", entry)
        if kind == "memo":
            memo = await self._store.get_memo(entity_id)
            if memo is None or memo.novel_id != novel_id:
                return None
            return f"【Memo: {memo.title}】\n{memo.content}"
        chapter = await self._store.get_chapter(entity_id)
        if chapter is None or chapter.novel_id != novel_id:
            return None
        return render_chapter(chapter, mode)

    async def resolve_all(self, text: str, novel_id: Optional[int]) -> dict[str, str]:
        """Map each distinct mention token in ``text`` to its rendered content."""

        if not text:
            return {}
        matches = list(MENTION_PATTERN.finditer(text))
        if not matches:
            return {}
        if not novel_id:
            # Early stages run before a manuscript exists.
            logger.debug("Skipping mention expansion without a novel")
            return {}

        replacements: dict[str, str] = {}
        for match in matches:
            token = match.group(0)
            if token in replacements:
                continue
            kind = _TYPE_ALIASES.get(match.group(1), match.group(1).lower())
            entity_id = int(match.group(2))
            mode = ChapterRefMode((match.group(3) or "full").lower())
            try:
                rendered = await self.render(kind, entity_id, novel_id, mode)
            except Exception:
                logger.exception("Failed to load mention", extra={"mention": token})
                rendered = f"[failed to load {kind} {entity_id}]"
            else:
                if rendered is None:
                    logger.warning("Mentioned entity not found", extra={"mention": token})
                    rendered = f"[{kind} {entity_id} not found]"
            replacements[token] = rendered
        return replacements

    async def expand(self, text: str, novel_id: Optional[int]) -> str:
        replacements = await self.resolve_all(text, novel_id)
        result = text
        for token, rendered in replacements.items():
            result = result.replace(token, rendered)
        return result
