"""Prompt assembly: authorization, parameter checks, block resolution, messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence

from novelforge_schemas import (
    ChapterRefMode,
    ChatMessage,
    ContentBlockType,
    FieldCard,
    PermissionLevel,
    Prompt,
    PromptContent,
    PromptRole,
    ResolvedContent,
    ResolvedContentType,
)

from ..cache import PromptCache
from ..errors import AuthorizationError, NotFoundError, ParameterValidationError
from ..interfaces import ManuscriptStore, PromptStore
from ..macros import MacroContext, MacroResolver, MentionLoader
from ..macros.mentions import render_card

logger = logging.getLogger(__name__)

_BLOCK_TYPES = {
    ContentBlockType.TEXT: ResolvedContentType.PROMPT,
    ContentBlockType.CHARACTER: ResolvedContentType.CHARACTER,
    ContentBlockType.WORLD: ResolvedContentType.WORLD,
}

_CARD_LABELS = {ContentBlockType.CHARACTER: "Character", ContentBlockType.WORLD: "World"}


@dataclass
class Mentions:
    """Entities the caller attached to free-form input."""

    character_ids: list[int] = field(default_factory=list)
    world_ids: list[int] = field(default_factory=list)
    memo_ids: list[int] = field(default_factory=list)
    chapters: list[tuple[int, ChapterRefMode]] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.character_ids or self.world_ids or self.memo_ids or self.chapters)


@dataclass
class SlotSelection:
    """Entities that fill character and world slots for one call."""

    character_ids: list[int] = field(default_factory=list)
    world_ids: list[int] = field(default_factory=list)


def missing_parameters(contents: Iterable[PromptContent], parameters: Mapping[str, object]) -> list[str]:
    missing: list[str] = []
    for block in contents:
        if not block.is_enabled:
            continue
        for parameter in block.parameters:
            if not parameter.required or parameter.name in missing:
                continue
            value = parameters.get(parameter.name)
            if value is None or not str(value).strip():
                missing.append(parameter.name)
    return missing


def trim_history(history: Sequence[ChatMessage], limit: Optional[int]) -> list[ChatMessage]:
    if not history:
        return []
    if limit is None:
        return list(history)
    if limit <= 0:
        return []
    return list(history[-limit:])


def build_messages(
    contents: Sequence[ResolvedContent],
    user_input: str,
    history: Sequence[ChatMessage] = (),
    history_limit: Optional[int] = None,
) -> list[ChatMessage]:
    """System blocks first, then the remaining blocks, trimmed history and the user turn."""

    ordered = sorted(contents, key=lambda item: item.order)
    messages = [ChatMessage(role=item.role, content=item.content) for item in ordered if item.role is PromptRole.SYSTEM]
    messages.extend(
        ChatMessage(role=item.role, content=item.content) for item in ordered if item.role is not PromptRole.SYSTEM
    )
    messages.extend(trim_history(history, history_limit))
    if user_input:
        messages.append(ChatMessage(role=PromptRole.USER, content=user_input))
    return messages


class PromptAssembler:
    """Turns a stored prompt and a caller's inputs into resolved content blocks."""

    def __init__(
        self,
        prompts: PromptStore,
        manuscripts: ManuscriptStore,
        *,
        cache: Optional[PromptCache] = None,
        resolver: Optional[MacroResolver] = None,
    ) -> None:
        self._prompts = prompts
        self._manuscripts = manuscripts
        self._cache = cache or PromptCache(prompts)
        self._mentions = MentionLoader(manuscripts)
        self._resolver = resolver or MacroResolver(self._mentions)

    @property
    def mentions(self) -> MentionLoader:
        return self._mentions

    @property
    def resolver(self) -> MacroResolver:
        return self._resolver

    async def load_prompt(self, prompt_id: int, owner_id: int) -> Prompt:
        """Fetch ``prompt_id`` and check that ``owner_id`` may run it.

        Raises:
            NotFoundError: If the prompt does not exist.
            AuthorizationError: If the prompt is banned, awaiting moderation,
                or neither public nor granted to the caller.
        """

        prompt = await self._cache.get(prompt_id)
        if prompt is None:
            raise NotFoundError(f"Prompt {prompt_id} not found")
        if prompt.is_banned:
            raise AuthorizationError(f"Prompt {prompt_id} has been banned")
        if prompt.needs_review:
            raise AuthorizationError(f"Prompt {prompt_id} is pending moderation review")
        if prompt.author_id == owner_id:
            return prompt

        grant = await self._prompts.get_grant(prompt_id, owner_id)
        has_use_grant = grant is not None and grant.level >= PermissionLevel.USE
        if prompt.require_application:
            if not has_use_grant:
                raise AuthorizationError(f"Prompt {prompt_id} requires an approved application")
            return prompt
        if prompt.is_public or grant is not None:
            return prompt
        raise AuthorizationError(f"No permission to use prompt {prompt_id}")

    @staticmethod
    def validate_parameters(prompt: Prompt, parameters: Mapping[str, object]) -> None:
        missing = missing_parameters(prompt.contents, parameters)
        if missing:
            raise ParameterValidationError(missing)

    async def expand_parameters(self, parameters: Mapping[str, str], novel_id: Optional[int]) -> dict[str, str]:
        """Expand ``@`` mentions inside parameter values; other macros stay literal."""

        expanded: dict[str, str] = {}
        for key, value in parameters.items():
            text = "" if value is None else str(value)
            try:
                expanded[key] = await self._mentions.expand(text, novel_id)
            except Exception:
                logger.exception("Parameter mention expansion failed", extra={"parameter": key})
                expanded[key] = text
        return expanded

    async def resolve(
        self,
        prompt: Prompt,
        owner_id: int,
        parameters: Mapping[str, str],
        *,
        novel_id: Optional[int] = None,
        slots: Optional[SlotSelection] = None,
        user_name: str = "",
    ) -> list[ResolvedContent]:
        """Resolve enabled blocks in order and run macros over them."""

        slots = slots or SlotSelection()
        context = MacroContext(
            owner_id=owner_id,
            novel_id=novel_id,
            user_name=user_name,
            variables=dict(parameters),
        )

        resolved: list[ResolvedContent] = []
        for block in sorted((b for b in prompt.contents if b.is_enabled), key=lambda b: b.order):
            content = await self._block_text(block, owner_id, slots)
            if not content:
                continue
            content = await self._resolver.render(content, context)
            resolved.append(
                ResolvedContent(
                    role=block.role,
                    content=content,
                    order=block.order,
                    source_id=block.id,
                    type=_BLOCK_TYPES[block.type],
                )
            )
        return resolved

    async def render_mentions(self, mentions: Optional[Mentions], owner_id: int) -> str:
        """Render explicitly attached entities, joined by blank lines."""

        if not mentions:
            return ""
        parts: list[str] = []
        for character_id in mentions.character_ids:
            character = await self._manuscripts.get_character(character_id)
            if character is not None and await self._owns(character.novel_id, owner_id):
                parts.append(render_card("Character", character))
        for world_id in mentions.world_ids:
            entry = await self._manuscripts.get_world_entry(world_id)
            if entry is not None and await self._owns(entry.novel_id, owner_id):
                parts.append(render_card("World", entry))
        for memo_id in mentions.memo_ids:
            memo = await self._manuscripts.get_memo(memo_id)
            if memo is not None and await self._owns(memo.novel_id, owner_id):
                parts.append(f"【Memo: {memo.title}】\n{memo.content}")
        for chapter_id, mode in mentions.chapters:
            chapter = await self._manuscripts.get_chapter(chapter_id)
            if chapter is None or not await self._owns(chapter.novel_id, owner_id):
                continue
            rendered = await self._mentions.render("chapter", chapter_id, chapter.novel_id, mode)
            if rendered:
                parts.append(rendered)
        return "\n\n".join(parts)

    async def _block_text(self, block: PromptContent, owner_id: int, slots: SlotSelection) -> str:
        if block.type is ContentBlockType.TEXT:
            return block.content

        label = _CARD_LABELS[block.type]
        if block.reference_id is not None:
            card = await self._load_card(block.type, block.reference_id)
            if card is None:
                raise NotFoundError(f"{label} {block.reference_id} not found")
            if not await self._owns(card.novel_id, owner_id):
                raise AuthorizationError(f"No permission to use {label.lower()} {block.reference_id}")
            return render_card(label, card)

        selected = slots.character_ids if block.type is ContentBlockType.CHARACTER else slots.world_ids
        rendered: list[str] = []
        for entity_id in selected:
            card = await self._load_card(block.type, entity_id)
            if card is None:
                logger.warning("Selected slot entity missing", extra={"slot": label, "entity_id": entity_id})
                continue
            if not await self._owns(card.novel_id, owner_id):
                raise AuthorizationError(f"No permission to use {label.lower()} {entity_id}")
            rendered.append(render_card(label, card))
        return "\n\n".join(rendered)

    async def _load_card(self, block_type: ContentBlockType, entity_id: int) -> Optional[FieldCard]:
        if block_type is ContentBlockType.CHARACTER:
            return await self._manuscripts.get_character(entity_id)
        return await self._manuscripts.get_world_entry(entity_id)

    async def _owns(self, novel_id: int, owner_id: int) -> bool:
        novel = await self._manuscripts.get_novel(novel_id)
        return novel is not None and novel.owner_id == owner_id
