"""Process wiring for the API and the Prefect flow.

Everything is built once per process. The progress notifier is bound to its
channel here, after both exist, which is the only place that binding happens.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from novelforge_providers import LLMProvider

from .assembly import PromptAssembler
from .cache import PromptCache
from .executor import StageExecutor
from .generation import GenerationCore
from .guards import PromptInjectionGuard
from .memory import InMemoryLedger, InMemoryStore
from .orchestrator import TaskOrchestrator
from .progress import ProgressBroadcaster, ProgressNotifier
from .providers import ProviderRouter
from .settings import OrchestratorSettings, get_settings


@dataclass
class Runtime:
    settings: OrchestratorSettings
    store: InMemoryStore
    ledger: InMemoryLedger
    broadcaster: ProgressBroadcaster
    core: GenerationCore
    executor: StageExecutor
    orchestrator: TaskOrchestrator


def build_runtime(
    settings: Optional[OrchestratorSettings] = None,
    *,
    provider: Optional[LLMProvider] = None,
    store: Optional[InMemoryStore] = None,
    ledger: Optional[InMemoryLedger] = None,
    broadcaster: Optional[ProgressBroadcaster] = None,
    sleep=None,
) -> Runtime:
    settings = settings or get_settings()
    store = store or InMemoryStore()
    ledger = ledger or InMemoryLedger(settings.starting_balance)
    stores = store.as_stores()

    notifier = ProgressNotifier()
    broadcaster = broadcaster or ProgressBroadcaster()
    notifier.bind(broadcaster)

    assembler = PromptAssembler(stores.prompts, stores.manuscripts, cache=PromptCache(stores.prompts))
    extra = {"sleep": sleep} if sleep is not None else {}
    core = GenerationCore(
        assembler,
        stores.prompts,
        ledger,
        ProviderRouter(provider),
        settings,
        guard=PromptInjectionGuard(),
        **extra,
    )
    executor = StageExecutor(core, stores, notifier)
    orchestrator = TaskOrchestrator(stores, ledger, executor, settings, notifier)
    return Runtime(
        settings=settings,
        store=store,
        ledger=ledger,
        broadcaster=broadcaster,
        core=core,
        executor=executor,
        orchestrator=orchestrator,
    )


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    return build_runtime()
