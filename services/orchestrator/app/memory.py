"""In-process collaborators: storage, ledger and progress broadcasting.

Records are copied on the way in and out so callers never share live objects
with the store, matching what a real persistence boundary would do.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional, Sequence, TypeVar

from pydantic import BaseModel

from novelforge_providers.pricing import calculate_cost, model_rate
from novelforge_schemas import (
    Chapter,
    Character,
    ConsumptionSource,
    Memo,
    Novel,
    OutlineNode,
    Prompt,
    PromptGrant,
    PromptGroup,
    StageRecord,
    Task,
    Volume,
    WorldEntry,
)

from .errors import InsufficientBalanceError, UnknownModelError
from .interfaces import Consumption, Stores
from .stages import ACTIVE_STATUSES

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _copy(record: ModelT) -> ModelT:
    return record.model_copy(deep=True)


class InMemoryStore:
    """Dict-backed implementation of every persistence protocol."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.tasks: dict[int, Task] = {}
        self.stage_records: dict[int, StageRecord] = {}
        self.outline_nodes: dict[int, OutlineNode] = {}
        self.novels: dict[int, Novel] = {}
        self.volumes: dict[int, Volume] = {}
        self.chapters: dict[int, Chapter] = {}
        self.characters: dict[int, Character] = {}
        self.world_entries: dict[int, WorldEntry] = {}
        self.memos: dict[int, Memo] = {}
        self.prompt_records: dict[int, Prompt] = {}
        self.grants: dict[tuple[int, int], PromptGrant] = {}
        self.prompt_groups: dict[int, PromptGroup] = {}

    def as_stores(self) -> Stores:
        return Stores(tasks=self, stages=self, outline=self, manuscripts=self, prompts=self)

    def _insert(self, table: dict[int, ModelT], record: ModelT) -> ModelT:
        stored = record.model_copy(update={"id": next(self._ids)}, deep=True)
        table[stored.id] = stored  # type: ignore[attr-defined]
        return _copy(stored)

    @staticmethod
    def _get(table: dict[int, ModelT], record_id: Optional[int]) -> Optional[ModelT]:
        record = table.get(record_id) if record_id is not None else None
        return _copy(record) if record is not None else None

    @staticmethod
    def _save(table: dict[int, ModelT], record: ModelT) -> ModelT:
        table[record.id] = _copy(record)  # type: ignore[attr-defined]
        return _copy(record)

    # seeding helpers used by fixtures and the demo app
    def add_prompt(self, prompt: Prompt) -> Prompt:
        return self._insert(self.prompt_records, prompt)

    def add_grant(self, grant: PromptGrant) -> None:
        self.grants[(grant.prompt_id, grant.user_id)] = _copy(grant)

    def add_prompt_group(self, group: PromptGroup) -> PromptGroup:
        return self._insert(self.prompt_groups, group)

    def add_memo(self, memo: Memo) -> Memo:
        return self._insert(self.memos, memo)

    # tasks
    async def create_task(self, task: Task) -> Task:
        return self._insert(self.tasks, task)

    async def get_task(self, task_id: int) -> Optional[Task]:
        return self._get(self.tasks, task_id)

    async def save_task(self, task: Task) -> Task:
        return self._save(self.tasks, task)

    async def list_tasks(self, owner_id: int, *, offset: int, limit: int) -> tuple[list[Task], int]:
        owned = sorted(
            (task for task in self.tasks.values() if task.owner_id == owner_id),
            key=lambda task: (task.created_at, task.id),
            reverse=True,
        )
        return [_copy(task) for task in owned[offset : offset + limit]], len(owned)

    async def count_active_tasks(self, owner_id: int) -> int:
        return sum(
            1
            for task in self.tasks.values()
            if task.owner_id == owner_id and task.status in ACTIVE_STATUSES
        )

    # stage records
    async def create_stage_record(self, record: StageRecord) -> StageRecord:
        return self._insert(self.stage_records, record)

    async def save_stage_record(self, record: StageRecord) -> StageRecord:
        return self._save(self.stage_records, record)

    async def list_stage_records(self, task_id: int) -> list[StageRecord]:
        records = [r for r in self.stage_records.values() if r.task_id == task_id]
        return [_copy(r) for r in sorted(records, key=lambda r: r.id)]

    # outline
    async def create_outline_node(self, node: OutlineNode) -> OutlineNode:
        return self._insert(self.outline_nodes, node)

    async def list_outline_nodes(self, task_id: int) -> list[OutlineNode]:
        nodes = [n for n in self.outline_nodes.values() if n.task_id == task_id]
        return [_copy(n) for n in sorted(nodes, key=lambda n: (int(n.level), n.order, n.id))]

    async def delete_outline_nodes(self, task_id: int) -> list[OutlineNode]:
        doomed = [node_id for node_id, node in self.outline_nodes.items() if node.task_id == task_id]
        return [self.outline_nodes.pop(node_id) for node_id in doomed]

    # manuscripts
    async def create_novel(self, novel: Novel) -> Novel:
        return self._insert(self.novels, novel)

    async def get_novel(self, novel_id: int) -> Optional[Novel]:
        return self._get(self.novels, novel_id)

    async def save_novel(self, novel: Novel) -> Novel:
        return self._save(self.novels, novel)

    async def create_volume(self, volume: Volume) -> Volume:
        return self._insert(self.volumes, volume)

    async def create_chapter(self, chapter: Chapter) -> Chapter:
        return self._insert(self.chapters, chapter)

    async def delete_volumes(self, volume_ids: Sequence[int]) -> None:
        for volume_id in volume_ids:
            self.volumes.pop(volume_id, None)

    async def delete_chapters(self, chapter_ids: Sequence[int]) -> None:
        for chapter_id in chapter_ids:
            self.chapters.pop(chapter_id, None)

    async def get_chapter(self, chapter_id: int) -> Optional[Chapter]:
        return self._get(self.chapters, chapter_id)

    async def save_chapter(self, chapter: Chapter) -> Chapter:
        return self._save(self.chapters, chapter)

    async def list_chapters(self, novel_id: int) -> list[Chapter]:
        chapters = [c for c in self.chapters.values() if c.novel_id == novel_id]
        return [_copy(c) for c in sorted(chapters, key=lambda c: (c.order, c.id))]

    async def get_character(self, character_id: int) -> Optional[Character]:
        return self._get(self.characters, character_id)

    async def list_characters(self, novel_id: int) -> list[Character]:
        found = [c for c in self.characters.values() if c.novel_id == novel_id]
        return [_copy(c) for c in sorted(found, key=lambda c: (c.order, c.id))]

    async def create_character(self, character: Character) -> Character:
        return self._insert(self.characters, character)

    async def get_world_entry(self, entry_id: int) -> Optional[WorldEntry]:
        return self._get(self.world_entries, entry_id)

    async def list_world_entries(self, novel_id: int) -> list[WorldEntry]:
        found = [e for e in self.world_entries.values() if e.novel_id == novel_id]
        return [_copy(e) for e in sorted(found, key=lambda e: (e.order, e.id))]

    async def create_world_entry(self, entry: WorldEntry) -> WorldEntry:
        return self._insert(self.world_entries, entry)

    async def get_memo(self, memo_id: int) -> Optional[Memo]:
        return self._get(self.memos, memo_id)

    async def list_memos(self, novel_id: int) -> list[Memo]:
        return [_copy(m) for m in self.memos.values() if m.novel_id == novel_id]

    # prompts
    async def get_prompt(self, prompt_id: int) -> Optional[Prompt]:
        return self._get(self.prompt_records, prompt_id)

    async def get_grant(self, prompt_id: int, user_id: int) -> Optional[PromptGrant]:
        grant = self.grants.get((prompt_id, user_id))
        return _copy(grant) if grant is not None else None

    async def get_prompt_group(self, group_id: int) -> Optional[PromptGroup]:
        return self._get(self.prompt_groups, group_id)

    async def increment_use_count(self, prompt_id: int) -> None:
        prompt = self.prompt_records.get(prompt_id)
        if prompt is not None:
            prompt.use_count += 1


@dataclass
class _Account:
    total: float
    used: float = 0.0
    frozen: float = 0.0

    @property
    def available(self) -> float:
        return self.total - self.used - self.frozen


@dataclass(frozen=True)
class LedgerEntry:
    owner_id: int
    model_id: str
    input_chars: int
    output_chars: int
    source: ConsumptionSource
    related_id: Optional[int]
    consumption: Consumption


class InMemoryLedger:
    """Per-owner balances priced with the static model rate table.

    Debits for the same owner are serialised with a per-owner lock.
    """

    def __init__(self, starting_balance: float = 200000, *, allow_overdraft: bool = True) -> None:
        self._starting_balance = starting_balance
        self._allow_overdraft = allow_overdraft
        self._accounts: dict[int, _Account] = {}
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.entries: list[LedgerEntry] = []

    def _account(self, owner_id: int) -> _Account:
        if owner_id not in self._accounts:
            self._accounts[owner_id] = _Account(total=self._starting_balance)
        return self._accounts[owner_id]

    def set_balance(self, owner_id: int, total: float, *, used: float = 0.0, frozen: float = 0.0) -> None:
        self._accounts[owner_id] = _Account(total=total, used=used, frozen=frozen)

    async def estimate_cost(
        self, model_id: str, input_chars: int, output_chars: int, owner_id: int
    ) -> int:
        rate = model_rate(model_id)
        if rate is None:
            raise UnknownModelError(f"No rate configured for model {model_id}")
        input_cost, output_cost = calculate_cost(rate, input_chars, output_chars)
        return input_cost + output_cost

    async def check_balance(self, owner_id: int, cost: float) -> bool:
        return self._account(owner_id).available >= cost

    async def available_balance(self, owner_id: int) -> float:
        return self._account(owner_id).available

    async def consume(
        self,
        owner_id: int,
        model_id: str,
        input_chars: int,
        output_chars: int,
        source: ConsumptionSource,
        related_id: Optional[int] = None,
    ) -> Consumption:
        rate = model_rate(model_id)
        if rate is None:
            logger.warning("Debiting unknown model at zero cost", extra={"model": model_id})
            input_cost, output_cost = 0, 0
        else:
            input_cost, output_cost = calculate_cost(rate, input_chars, output_chars)
        consumption = Consumption(
            total_cost=input_cost + output_cost, input_cost=input_cost, output_cost=output_cost
        )

        async with self._locks[owner_id]:
            account = self._account(owner_id)
            if not self._allow_overdraft and consumption.total_cost > account.available:
                raise InsufficientBalanceError()
            account.used += consumption.total_cost
            self.entries.append(
                LedgerEntry(
                    owner_id=owner_id,
                    model_id=model_id,
                    input_chars=input_chars,
                    output_chars=output_chars,
                    source=source,
                    related_id=related_id,
                    consumption=consumption,
                )
            )
        return consumption
