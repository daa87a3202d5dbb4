"""Per-chapter generation context and helpers shared by the stage engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence

from novelforge_schemas import (
    Chapter,
    ConsumptionSource,
    FieldCard,
    Memo,
    PromptStageKey,
    StageType,
    Task,
)

from .errors import ConfigurationError, PreconditionError
from .generation import GenerationRequest
from .interfaces import ManuscriptStore


@dataclass
class ChapterContext:
    """Material every chapter prompt receives besides its own outline."""

    characters: list[FieldCard] = field(default_factory=list)
    world_entries: list[FieldCard] = field(default_factory=list)
    pinned_memos: list[Memo] = field(default_factory=list)
    previous_summaries: list[str] = field(default_factory=list)


def format_cards(cards: Iterable[FieldCard]) -> str:
    return "\n".join(f"【{card.name}】: {card.description}" for card in cards)


def format_memos(memos: Iterable[Memo]) -> str:
    return "\n\n".join(f"{memo.title}\n{memo.content}".strip() for memo in memos)


def previous_summaries(chapter: Chapter, chapters: Sequence[Chapter]) -> list[str]:
    """Summaries of earlier chapters in the same volume, oldest first."""

    return [
        f"Chapter {other.order + 1}: {other.summary}"
        for other in sorted(chapters, key=lambda c: (c.order, c.id))
        if other.volume_id == chapter.volume_id and other.order < chapter.order and other.summary
    ]


async def build_chapter_context(
    manuscripts: ManuscriptStore,
    chapter: Chapter,
    chapters: Optional[Sequence[Chapter]] = None,
) -> ChapterContext:
    if chapters is None:
        chapters = await manuscripts.list_chapters(chapter.novel_id)
    memos = await manuscripts.list_memos(chapter.novel_id)
    return ChapterContext(
        characters=list(await manuscripts.list_characters(chapter.novel_id)),
        world_entries=list(await manuscripts.list_world_entries(chapter.novel_id)),
        pinned_memos=[memo for memo in memos if memo.is_pinned],
        previous_summaries=previous_summaries(chapter, chapters),
    )


def chapter_parameters(chapter: Chapter, context: ChapterContext) -> dict[str, str]:
    return {
        "chapter_title": chapter.title,
        "chapter_summary": chapter.summary,
        "previous_summaries": "\n".join(context.previous_summaries),
        "characters": format_cards(context.characters),
        "world": format_cards(context.world_entries),
        "pinned_notes": format_memos(context.pinned_memos),
    }


def require_prompt(task: Task, key: PromptStageKey) -> int:
    """Prompt id configured for ``key``.

    Raises:
        ConfigurationError: If the task has no prompt for that slot.
    """

    prompt_id = task.prompt_config.prompt_for(key)
    if not prompt_id:
        raise ConfigurationError(f"No prompt configured for '{key.value}'")
    return prompt_id


def require_novel(task: Task) -> int:
    if not task.novel_id:
        raise PreconditionError("Task has no manuscript yet; run the title stage first")
    return task.novel_id


def stage_request(
    task: Task,
    prompt_id: int,
    stage: StageType,
    parameters: Mapping[str, object],
    *,
    user_input: str = "",
) -> GenerationRequest:
    """Generation request billed to the task owner as book creation."""

    return GenerationRequest(
        prompt_id=prompt_id,
        owner_id=task.owner_id,
        parameters={key: "" if value is None else str(value) for key, value in parameters.items()},
        user_input=user_input,
        model_id=task.model_id,
        temperature=task.task_config.temperature,
        max_tokens=task.task_config.max_output_tokens,
        history_limit=task.task_config.history_message_limit,
        novel_id=task.novel_id,
        source=ConsumptionSource.BOOK_CREATION,
        related_id=task.id,
        stage=stage.value,
    )
