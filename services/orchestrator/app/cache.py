"""Process-local prompt cache keyed by prompt id."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from novelforge_schemas import Prompt

from .interfaces import PromptStore


class PromptCache:
    """Read-through cache in front of a :class:`PromptStore`.

    Entries live for the process lifetime; writes made elsewhere are not
    observed. Misses for the same id are collapsed behind a per-id lock.
    """

    def __init__(self, store: PromptStore) -> None:
        self._store = store
        self._entries: Dict[int, Prompt] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    async def get(self, prompt_id: int) -> Optional[Prompt]:
        cached = self._entries.get(prompt_id)
        if cached is not None:
            return cached
        lock = self._locks.setdefault(prompt_id, asyncio.Lock())
        async with lock:
            cached = self._entries.get(prompt_id)
            if cached is not None:
                return cached
            prompt = await self._store.get_prompt(prompt_id)
            if prompt is not None:
                self._entries[prompt_id] = prompt
            return prompt

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
