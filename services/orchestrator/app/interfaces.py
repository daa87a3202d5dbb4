"""Narrow collaborator contracts the orchestration core is written against.

Storage, the balance ledger, the progress channel and streaming sinks are
owned elsewhere; :mod:`.memory` provides in-process implementations used by
the API entrypoint, the Prefect flow and the tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from novelforge_schemas import (
    Chapter,
    Character,
    ConsumptionSource,
    Memo,
    Novel,
    OutlineNode,
    ProgressEvent,
    Prompt,
    PromptGrant,
    PromptGroup,
    StageRecord,
    Task,
    Volume,
    WorldEntry,
)


@dataclass(frozen=True)
class Consumption:
    total_cost: int
    input_cost: int
    output_cost: int


class TaskRepository(Protocol):
    async def create_task(self, task: Task) -> Task: ...

    async def get_task(self, task_id: int) -> Optional[Task]: ...

    async def save_task(self, task: Task) -> Task: ...

    async def list_tasks(self, owner_id: int, *, offset: int, limit: int) -> tuple[list[Task], int]: ...

    async def count_active_tasks(self, owner_id: int) -> int: ...


class StageRecordRepository(Protocol):
    async def create_stage_record(self, record: StageRecord) -> StageRecord: ...

    async def save_stage_record(self, record: StageRecord) -> StageRecord: ...

    async def list_stage_records(self, task_id: int) -> list[StageRecord]: ...


class OutlineRepository(Protocol):
    async def create_outline_node(self, node: OutlineNode) -> OutlineNode: ...

    async def list_outline_nodes(self, task_id: int) -> list[OutlineNode]: ...

    async def delete_outline_nodes(self, task_id: int) -> list[OutlineNode]: ...


class ManuscriptStore(Protocol):
    """Read access to manuscripts plus the few writes the pipeline performs."""

    async def create_novel(self, novel: Novel) -> Novel: ...

    async def get_novel(self, novel_id: int) -> Optional[Novel]: ...

    async def save_novel(self, novel: Novel) -> Novel: ...

    async def create_volume(self, volume: Volume) -> Volume: ...

    async def create_chapter(self, chapter: Chapter) -> Chapter: ...

    async def delete_volumes(self, volume_ids: Sequence[int]) -> None: ...

    async def delete_chapters(self, chapter_ids: Sequence[int]) -> None: ...

    async def get_chapter(self, chapter_id: int) -> Optional[Chapter]: ...

    async def save_chapter(self, chapter: Chapter) -> Chapter: ...

    async def list_chapters(self, novel_id: int) -> list[Chapter]: ...

    async def get_character(self, character_id: int) -> Optional[Character]: ...

    async def list_characters(self, novel_id: int) -> list[Character]: ...

    async def create_character(self, character: Character) -> Character: ...

    async def get_world_entry(self, entry_id: int) -> Optional[WorldEntry]: ...

    async def list_world_entries(self, novel_id: int) -> list[WorldEntry]: ...

    async def create_world_entry(self, entry: WorldEntry) -> WorldEntry: ...

    async def get_memo(self, memo_id: int) -> Optional[Memo]: ...

    async def list_memos(self, novel_id: int) -> list[Memo]: ...


class PromptStore(Protocol):
    async def get_prompt(self, prompt_id: int) -> Optional[Prompt]: ...

    async def get_grant(self, prompt_id: int, user_id: int) -> Optional[PromptGrant]: ...

    async def get_prompt_group(self, group_id: int) -> Optional[PromptGroup]: ...

    async def increment_use_count(self, prompt_id: int) -> None: ...


class Ledger(Protocol):
    """Balance ledger.

    ``estimate_cost`` raises :class:`~.errors.UnknownModelError` for models the
    ledger cannot price; callers treat that as "skip the precheck".
    Implementations serialise concurrent ``consume`` calls per owner.
    """

    async def estimate_cost(
        self, model_id: str, input_chars: int, output_chars: int, owner_id: int
    ) -> int: ...

    async def check_balance(self, owner_id: int, cost: float) -> bool: ...

    async def available_balance(self, owner_id: int) -> float: ...

    async def consume(
        self,
        owner_id: int,
        model_id: str,
        input_chars: int,
        output_chars: int,
        source: ConsumptionSource,
        related_id: Optional[int] = None,
    ) -> Consumption: ...


class ProgressChannel(Protocol):
    async def emit(self, task_id: int, event: ProgressEvent) -> None: ...

    async def release(self, task_id: int) -> None: ...


class ResponseSink(Protocol):
    """Append-only, flush-on-write frame channel observed by a client."""

    async def write(self, frame: str) -> None: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class Stores:
    """Every persistence collaborator, bundled so the core can pass one value."""

    tasks: TaskRepository
    stages: StageRecordRepository
    outline: OutlineRepository
    manuscripts: ManuscriptStore
    prompts: PromptStore
