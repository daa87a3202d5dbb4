"""Generation core: assemble, precheck, call the model, reconcile cost.

Each logical call is debited exactly once from the characters actually sent
and received. Provider usage, when reported, wins over raw character counts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import Optional

from novelforge_observability import log_context, observe_cost_units, observe_provider_response
from novelforge_providers import (
    ClientDisconnected,
    LLMProvider,
    ProviderError,
    ProviderRequest,
    ProviderResponse,
    ProviderTransientError,
)
from novelforge_providers.pricing import count_chars, detect_language, token_to_chars
from novelforge_schemas import ChatMessage, ConsumptionSource, Prompt, PromptRole
from novelforge_schemas.utils.validators import clamp_non_negative

from ..assembly import Mentions, PromptAssembler, SlotSelection, build_messages
from ..errors import InsufficientBalanceError, UnknownModelError
from ..guards import PromptInjectionGuard, RiskLevel
from ..interfaces import Ledger, PromptStore, ResponseSink
from ..providers import ProviderRouter
from ..settings import SERVICE_NAME, OrchestratorSettings
from .sinks import StreamWriter

logger = logging.getLogger(__name__)


@dataclass
class GenerationRequest:
    prompt_id: int
    owner_id: int
    parameters: dict[str, str] = field(default_factory=dict)
    user_input: str = ""
    history: list[ChatMessage] = field(default_factory=list)
    model_id: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    history_limit: Optional[int] = None
    novel_id: Optional[int] = None
    slots: SlotSelection = field(default_factory=SlotSelection)
    mentions: Mentions = field(default_factory=Mentions)
    user_name: str = ""
    source: ConsumptionSource = ConsumptionSource.GENERATION
    related_id: Optional[int] = None
    stage: str = "generation"


@dataclass
class PreparedCall:
    prompt: Prompt
    messages: list[ChatMessage]
    model_id: str
    temperature: float
    max_tokens: Optional[int]
    input_chars: int
    protected: bool = False
    risk_level: RiskLevel = RiskLevel.SAFE

    @property
    def rendered_input(self) -> str:
        return "".join(message.content for message in self.messages)


@dataclass
class GenerationResult:
    content: str
    model_id: str
    input_chars: int
    output_chars: int
    cost: float
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    interrupted: bool = False


@dataclass
class _StreamState:
    parts: list[str] = field(default_factory=list)
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    interrupted: bool = False

    @property
    def text(self) -> str:
        return "".join(self.parts)


class GenerationCore:
    """Runs one prompt against one model on behalf of one caller."""

    def __init__(
        self,
        assembler: PromptAssembler,
        prompts: PromptStore,
        ledger: Ledger,
        router: ProviderRouter,
        settings: OrchestratorSettings,
        *,
        guard: Optional[PromptInjectionGuard] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._assembler = assembler
        self._prompts = prompts
        self._ledger = ledger
        self._router = router
        self._settings = settings
        self._guard = guard or PromptInjectionGuard()
        self._sleep = sleep

    async def prepare(self, request: GenerationRequest, *, streaming: bool = False) -> PreparedCall:
        """Assemble messages and run the balance precheck.

        Raises:
            NotFoundError: If the prompt or a referenced entity is missing.
            AuthorizationError: If the caller may not use the prompt or entity.
            ParameterValidationError: If required parameters are blank.
            InsufficientBalanceError: If the estimated cost exceeds the balance.
        """

        prompt = await self._assembler.load_prompt(request.prompt_id, request.owner_id)
        protect = prompt.author_id != request.owner_id

        parameters = await self._assembler.expand_parameters(request.parameters, request.novel_id)
        self._assembler.validate_parameters(prompt, parameters)
        if protect and parameters:
            parameters = self._guard.protect_parameters(parameters)

        contents = await self._assembler.resolve(
            prompt,
            request.owner_id,
            parameters,
            novel_id=request.novel_id,
            slots=request.slots,
            user_name=request.user_name,
        )

        mentioned = await self._assembler.render_mentions(request.mentions, request.owner_id)
        user_input = "\n\n".join(part for part in (mentioned, request.user_input) if part)

        risk_level = RiskLevel.SAFE
        if protect and user_input:
            protected = self._guard.protect_input(user_input)
            user_input = protected.protected
            risk_level = protected.risk.level

        history_limit = request.history_limit
        if history_limit is None:
            history_limit = self._settings.history_limit
        messages = build_messages(contents, user_input, request.history, history_limit)
        if protect:
            messages.insert(0, ChatMessage(role=PromptRole.SYSTEM, content=self._guard.directive(risk_level)))

        prepared = PreparedCall(
            prompt=prompt,
            messages=messages,
            model_id=request.model_id or self._settings.default_model,
            temperature=(
                request.temperature if request.temperature is not None else self._settings.default_temperature
            ),
            max_tokens=request.max_tokens,
            input_chars=0,
            protected=protect,
            risk_level=risk_level,
        )
        prepared.input_chars = count_chars(prepared.rendered_input)

        estimated_output = self._settings.estimated_output_chars(streaming=streaming, max_tokens=request.max_tokens)
        await self._precheck(request.owner_id, prepared, estimated_output)
        return prepared

    async def generate(
        self, request: GenerationRequest, *, prepared: Optional[PreparedCall] = None
    ) -> GenerationResult:
        """Buffered call. Transient provider failures are retried with backoff."""

        prepared = prepared or await self.prepare(request)
        provider = self._router.for_model(prepared.model_id)
        provider_request = self._provider_request(request, prepared)

        with log_context(owner_id=request.owner_id, prompt_id=request.prompt_id, model=prepared.model_id):
            try:
                response = await self._complete(provider, provider_request)
            except asyncio.CancelledError:
                # The request was dispatched; bill the input that was sent.
                await asyncio.shield(self._settle_quietly(request, prepared, "", None, None))
                raise

            observe_provider_response(
                stage=request.stage,
                provider=getattr(provider, "name", "unknown"),
                service_name=SERVICE_NAME,
                response=response,
            )
            cost, input_chars, output_chars = await self._settle(
                request, prepared, response.text, response.prompt_tokens, response.completion_tokens
            )
            await self._record_use(prepared.prompt)

        return GenerationResult(
            content=response.text,
            model_id=prepared.model_id,
            input_chars=input_chars,
            output_chars=output_chars,
            cost=cost,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
        )

    async def stream_to(
        self,
        sink: ResponseSink,
        request: GenerationRequest,
        *,
        prepared: Optional[PreparedCall] = None,
    ) -> GenerationResult:
        """Stream deltas into ``sink`` as content frames, then a metadata frame.

        A client disconnect or a transient abort after the first delta ends
        the stream cleanly and bills the partial output. A provider failure
        before any delta writes an error frame and propagates.
        """

        prepared = prepared or await self.prepare(request, streaming=True)
        provider = self._router.for_model(prepared.model_id)
        provider_request = self._provider_request(request, prepared)
        writer = StreamWriter(sink)
        state = _StreamState()
        client_gone = False
        started = perf_counter()

        with log_context(owner_id=request.owner_id, prompt_id=request.prompt_id, model=prepared.model_id):
            try:
                await self._pump(provider, provider_request, writer, state)
            except ClientDisconnected:
                client_gone = True
                state.interrupted = True
                logger.info("Client disconnected mid-stream", extra={"output_chars": len(state.text)})
            except asyncio.CancelledError:
                await asyncio.shield(
                    self._settle_quietly(
                        request, prepared, state.text, state.prompt_tokens, state.completion_tokens
                    )
                )
                raise
            except ProviderError as exc:
                await self._write_quietly(writer.error(str(exc) or "Model provider failed"))
                if state.parts:
                    await self._settle_quietly(
                        request, prepared, state.text, state.prompt_tokens, state.completion_tokens
                    )
                raise

            observe_provider_response(
                stage=request.stage,
                provider=getattr(provider, "name", "unknown"),
                service_name=SERVICE_NAME,
                response=ProviderResponse(
                    text=state.text,
                    raw=None,
                    model=prepared.model_id,
                    prompt_tokens=state.prompt_tokens,
                    completion_tokens=state.completion_tokens,
                    latency_ms=(perf_counter() - started) * 1000,
                ),
            )
            cost, input_chars, output_chars = await self._settle(
                request, prepared, state.text, state.prompt_tokens, state.completion_tokens
            )
            await self._record_use(prepared.prompt)

            if not client_gone:
                try:
                    await writer.metadata(
                        input_chars=input_chars,
                        output_chars=output_chars,
                        cost=cost,
                        model=prepared.model_id,
                        interrupted=state.interrupted,
                    )
                    await writer.done()
                except ClientDisconnected:
                    logger.info("Client disconnected before stream metadata")

        return GenerationResult(
            content=state.text,
            model_id=prepared.model_id,
            input_chars=input_chars,
            output_chars=output_chars,
            cost=cost,
            prompt_tokens=state.prompt_tokens,
            completion_tokens=state.completion_tokens,
            interrupted=state.interrupted,
        )

    async def _precheck(self, owner_id: int, prepared: PreparedCall, estimated_output: int) -> None:
        try:
            estimate = await self._ledger.estimate_cost(
                prepared.model_id, prepared.input_chars, estimated_output, owner_id
            )
        except UnknownModelError:
            logger.warning("Skipping balance precheck for unpriced model", extra={"model": prepared.model_id})
            return
        if not await self._ledger.check_balance(owner_id, estimate):
            logger.info(
                "Balance precheck rejected generation",
                extra={"owner_id": owner_id, "model": prepared.model_id, "cost": estimate},
            )
            raise InsufficientBalanceError()

    def _provider_request(self, request: GenerationRequest, prepared: PreparedCall) -> ProviderRequest:
        return ProviderRequest(
            messages=[message.as_dict() for message in prepared.messages],
            model=prepared.model_id,
            temperature=prepared.temperature,
            max_output_tokens=prepared.max_tokens,
            metadata={"stage": request.stage, "prompt_id": request.prompt_id},
        )

    async def _complete(self, provider: LLMProvider, provider_request: ProviderRequest) -> ProviderResponse:
        retries = self._settings.provider_retries
        attempt = 0
        while True:
            try:
                return await provider.generate(provider_request)
            except ProviderTransientError:
                if attempt >= retries:
                    raise
                await self._backoff(attempt)
                attempt += 1

    async def _pump(
        self,
        provider: LLMProvider,
        provider_request: ProviderRequest,
        writer: StreamWriter,
        state: _StreamState,
    ) -> None:
        retries = self._settings.provider_retries
        attempt = 0
        while True:
            try:
                async for chunk in provider.stream(provider_request):
                    if chunk.prompt_tokens is not None:
                        state.prompt_tokens = chunk.prompt_tokens
                    if chunk.completion_tokens is not None:
                        state.completion_tokens = chunk.completion_tokens
                    if chunk.delta:
                        state.parts.append(chunk.delta)
                        await writer.content(chunk.delta)
                return
            except ProviderTransientError:
                if state.parts:
                    state.interrupted = True
                    logger.warning(
                        "Provider stream aborted after partial output",
                        extra={"output_chars": len(state.text)},
                    )
                    return
                if attempt >= retries:
                    raise
                await self._backoff(attempt)
                attempt += 1

    async def _backoff(self, attempt: int) -> None:
        delay = self._settings.retry_backoff_seconds * (2**attempt)
        logger.warning("Transient provider failure; retrying", extra={"attempt": attempt + 1})
        await self._sleep(delay)

    def _measure(
        self,
        prepared: PreparedCall,
        output: str,
        prompt_tokens: Optional[int],
        completion_tokens: Optional[int],
    ) -> tuple[int, int]:
        if prompt_tokens is not None and completion_tokens is not None:
            language = detect_language(prepared.rendered_input + output)
            return token_to_chars(prompt_tokens, language), token_to_chars(completion_tokens, language)
        return prepared.input_chars, count_chars(output)

    async def _settle(
        self,
        request: GenerationRequest,
        prepared: PreparedCall,
        output: str,
        prompt_tokens: Optional[int],
        completion_tokens: Optional[int],
    ) -> tuple[float, int, int]:
        """Debit the ledger once; returns ``(cost, input_chars, output_chars)``.

        Raises:
            InsufficientBalanceError: If the ledger refuses the debit.
        """

        input_chars, output_chars = self._measure(prepared, output, prompt_tokens, completion_tokens)
        try:
            consumption = await self._ledger.consume(
                request.owner_id,
                prepared.model_id,
                input_chars,
                output_chars,
                request.source,
                request.related_id,
            )
        except InsufficientBalanceError:
            raise
        except Exception:
            logger.exception(
                "Ledger debit failed",
                extra={"owner_id": request.owner_id, "input_chars": input_chars, "output_chars": output_chars},
            )
            return 0.0, input_chars, output_chars

        cost = clamp_non_negative(consumption.total_cost)
        observe_cost_units(request.source.value, cost, service_name=SERVICE_NAME)
        logger.info(
            "Generation settled",
            extra={"input_chars": input_chars, "output_chars": output_chars, "cost": cost},
        )
        return cost, input_chars, output_chars

    async def _settle_quietly(
        self,
        request: GenerationRequest,
        prepared: PreparedCall,
        output: str,
        prompt_tokens: Optional[int],
        completion_tokens: Optional[int],
    ) -> None:
        """Settle while another exception is already propagating."""

        try:
            await self._settle(request, prepared, output, prompt_tokens, completion_tokens)
        except InsufficientBalanceError:
            logger.warning("Ledger refused debit for interrupted call", extra={"owner_id": request.owner_id})

    async def _record_use(self, prompt: Prompt) -> None:
        try:
            await self._prompts.increment_use_count(prompt.id)
        except Exception:
            logger.warning("Failed to record prompt use", exc_info=True, extra={"prompt_id": prompt.id})

    @staticmethod
    async def _write_quietly(write) -> None:
        try:
            await write
        except ClientDisconnected:
            logger.info("Client gone before error frame could be written")
