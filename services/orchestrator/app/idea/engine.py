"""Idea stage: brainstorm a story concept from the creator's parameters."""

from __future__ import annotations

from dataclasses import dataclass

from novelforge_schemas import PromptStageKey, StageType, Task

from ..context import require_prompt, stage_request
from ..errors import StageOutputError
from ..generation import GenerationCore, GenerationRequest, GenerationResult
from ..interfaces import ResponseSink


@dataclass
class IdeaResult:
    brainstorm: str
    cost: float
    interrupted: bool = False

    def as_output(self) -> dict[str, str]:
        return {"brainstorm": self.brainstorm}


def idea_request(task: Task) -> GenerationRequest:
    prompt_id = require_prompt(task, PromptStageKey.IDEA)
    parameters = {
        key: value for key, value in task.processed_data.user_parameters.items() if not isinstance(value, (dict, list))
    }
    return stage_request(task, prompt_id, StageType.IDEA, parameters)


def _result(generation: GenerationResult) -> IdeaResult:
    brainstorm = generation.content.strip()
    if not brainstorm:
        raise StageOutputError("Idea generation returned no content")
    return IdeaResult(brainstorm=brainstorm, cost=generation.cost, interrupted=generation.interrupted)


async def generate_idea(core: GenerationCore, task: Task) -> IdeaResult:
    return _result(await core.generate(idea_request(task)))


async def stream_idea(core: GenerationCore, task: Task, sink: ResponseSink) -> IdeaResult:
    return _result(await core.stream_to(sink, idea_request(task)))


async def optimize_idea(core: GenerationCore, task: Task, feedback: str) -> IdeaResult:
    """Rewrite the current brainstorm according to the creator's feedback."""

    prompt_id = require_prompt(task, PromptStageKey.IDEA_OPTIMIZE)
    request = stage_request(
        task,
        prompt_id,
        StageType.IDEA,
        {"original_content": task.processed_data.brainstorm or "", "user_feedback": feedback},
    )
    return _result(await core.generate(request))
