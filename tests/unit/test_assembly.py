"""Tests for prompt authorization, parameter checks and message assembly."""

from __future__ import annotations

import pytest

from novelforge_schemas import (
    Character,
    ChatMessage,
    ContentBlockType,
    Novel,
    PermissionLevel,
    Prompt,
    PromptContent,
    PromptGrant,
    PromptParameter,
    PromptRole,
    ResolvedContent,
    ResolvedContentType,
)

from services.orchestrator.app.assembly import PromptAssembler, SlotSelection, build_messages, trim_history
from services.orchestrator.app.cache import PromptCache
from services.orchestrator.app.errors import AuthorizationError, NotFoundError, ParameterValidationError
from services.orchestrator.app.memory import InMemoryStore


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def assembler(store: InMemoryStore) -> PromptAssembler:
    return PromptAssembler(store, store)


def _prompt(author_id: int = 2, **flags) -> Prompt:
    return Prompt(
        author_id=author_id,
        name="scene",
        contents=[PromptContent(id=1, content="Write a scene.", order=0)],
        **flags,
    )


async def test_author_may_always_use_their_prompt(store, assembler) -> None:
    prompt = store.add_prompt(_prompt(author_id=1, require_application=True))
    assert (await assembler.load_prompt(prompt.id, 1)).id == prompt.id


@pytest.mark.parametrize(
    "flags, message",
    [
        ({"is_banned": True, "is_public": True}, "banned"),
        ({"needs_review": True, "is_public": True}, "moderation"),
        ({}, "No permission"),
        ({"require_application": True, "is_public": True}, "application"),
    ],
)
async def test_prompt_access_is_refused(store, assembler, flags, message) -> None:
    prompt = store.add_prompt(_prompt(**flags))
    with pytest.raises(AuthorizationError, match=message):
        await assembler.load_prompt(prompt.id, 1)


async def test_missing_prompt_is_not_found(assembler) -> None:
    with pytest.raises(NotFoundError):
        await assembler.load_prompt(404, 1)


async def test_grants_open_private_and_application_prompts(store, assembler) -> None:
    private = store.add_prompt(_prompt())
    store.add_grant(PromptGrant(prompt_id=private.id, user_id=1, level=PermissionLevel.VIEW))
    assert (await assembler.load_prompt(private.id, 1)).id == private.id

    gated = store.add_prompt(_prompt(require_application=True))
    store.add_grant(PromptGrant(prompt_id=gated.id, user_id=1, level=PermissionLevel.VIEW))
    with pytest.raises(AuthorizationError):
        await assembler.load_prompt(gated.id, 1)

    store.add_grant(PromptGrant(prompt_id=gated.id, user_id=1, level=PermissionLevel.USE))
    assert (await assembler.load_prompt(gated.id, 1)).id == gated.id


def test_blank_required_parameters_are_reported_once() -> None:
    prompt = Prompt(
        author_id=1,
        name="p",
        contents=[
            PromptContent(
                content="{{genre}} {{tone}}",
                parameters=[
                    PromptParameter(name="genre", required=True),
                    PromptParameter(name="tone", required=True),
                    PromptParameter(name="extra"),
                ],
            ),
            PromptContent(content="{{genre}}", parameters=[PromptParameter(name="genre", required=True)]),
            PromptContent(
                content="{{hidden}}",
                is_enabled=False,
                parameters=[PromptParameter(name="hidden", required=True)],
            ),
        ],
    )
    with pytest.raises(ParameterValidationError) as excinfo:
        PromptAssembler.validate_parameters(prompt, {"genre": "   "})
    assert excinfo.value.missing == ["genre", "tone"]

    PromptAssembler.validate_parameters(prompt, {"genre": "noir", "tone": "dry"})


def test_build_messages_orders_system_blocks_first() -> None:
    contents = [
        ResolvedContent(role=PromptRole.USER, content="example", order=1, source_id=2, type=ResolvedContentType.PROMPT),
        ResolvedContent(role=PromptRole.SYSTEM, content="late rule", order=5, source_id=3, type=ResolvedContentType.PROMPT),
        ResolvedContent(role=PromptRole.SYSTEM, content="rule", order=0, source_id=1, type=ResolvedContentType.PROMPT),
    ]
    history = [ChatMessage(role=PromptRole.USER, content=f"turn {index}") for index in range(4)]

    messages = build_messages(contents, "now", history, history_limit=2)

    assert [m.content for m in messages] == ["rule", "late rule", "example", "turn 2", "turn 3", "now"]
    assert messages[-1].role is PromptRole.USER


def test_trim_history_limits() -> None:
    history = [ChatMessage(role=PromptRole.USER, content=str(index)) for index in range(3)]
    assert trim_history(history, None) == history
    assert trim_history(history, 0) == []
    assert [m.content for m in trim_history(history, 1)] == ["2"]


async def test_resolve_fills_slots_and_runs_macros(store, assembler) -> None:
    novel = await store.create_novel(Novel(owner_id=1, name="Tides"))
    lin = await store.create_character(Character(novel_id=novel.id, name="Lin", fields={"role": "captain"}))
    prompt = Prompt(
        author_id=1,
        name="p",
        contents=[
            PromptContent(id=10, content="Tone: {{tone}}", order=0),
            PromptContent(id=11, role=PromptRole.USER, type=ContentBlockType.CHARACTER, order=1),
            PromptContent(id=12, type=ContentBlockType.WORLD, order=2),
        ],
    )

    resolved = await assembler.resolve(
        prompt, 1, {"tone": "grim"}, novel_id=novel.id, slots=SlotSelection(character_ids=[lin.id])
    )

    assert [item.content for item in resolved] == ["Tone: grim", "【Character: Lin】\nrole: captain"]
    assert resolved[1].type is ResolvedContentType.CHARACTER
    assert resolved[1].source_id == 11


async def test_referenced_card_must_belong_to_caller(store, assembler) -> None:
    foreign = await store.create_novel(Novel(owner_id=2, name="Theirs"))
    card = await store.create_character(Character(novel_id=foreign.id, name="Ghost"))
    prompt = Prompt(
        author_id=1,
        name="p",
        contents=[PromptContent(type=ContentBlockType.CHARACTER, reference_id=card.id)],
    )
    with pytest.raises(AuthorizationError):
        await assembler.resolve(prompt, 1, {})

    missing = Prompt(
        author_id=1,
        name="p",
        contents=[PromptContent(type=ContentBlockType.WORLD, reference_id=999)],
    )
    with pytest.raises(NotFoundError):
        await assembler.resolve(missing, 1, {})


async def test_prompt_cache_reads_through_once() -> None:
    class _CountingStore(InMemoryStore):
        reads = 0

        async def get_prompt(self, prompt_id):
            type(self).reads += 1
            return await super().get_prompt(prompt_id)

    counting = _CountingStore()
    prompt = counting.add_prompt(_prompt())
    cache = PromptCache(counting)

    assert (await cache.get(prompt.id)).name == "scene"
    assert (await cache.get(prompt.id)).name == "scene"
    assert await cache.get(999) is None
    assert _CountingStore.reads == 2
    assert len(cache) == 1
