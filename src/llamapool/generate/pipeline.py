"""Generation pipeline: synchronous, streaming and reasoning jobs.

Every text job runs through the same stages::

    Configure → (Retrieve) → Acquire → Assemble → [Reasoning]* → Generate → Release

Retrieval runs before the job holds a sequence: the embedding model it needs
may have to be loaded, and a text load can wait for held sequences to drain.
Acquire/Release are handled by JobResources, so the session, sequence and
(when idle) context are released on every path. Vector jobs skip all of it
and return the normalised embedding of the cleaned prompt.

Token counts are meter deltas of the job's sequence, so they include the
reasoning passes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TypeVar

from llamapool.config import LlamapoolConfig
from llamapool.engine.base import (
    FunctionDefinition,
    InferenceEngine,
    OutputModality,
    PromptOptions,
    TokenMeter,
)
from llamapool.errors import UnsupportedOperationError
from llamapool.generate.grammar import GrammarSource, build_prompt_options
from llamapool.generate.resources import JobResources
from llamapool.generate.stream import TextChannel
from llamapool.generate.templates import (
    END_OF_TURN,
    reasoning_prompt,
    refine_prompt,
    wrap_reasoning,
)
from llamapool.log_context import log_context
from llamapool.pool import ContextPool
from llamapool.rag.assembler import ChatHistoryItem, PromptAssembler
from llamapool.rag.index import DocumentIndex, clean_text, l2_normalize
from llamapool.registry import ModelRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class JobParameters:
    """One generation request.

    Unset (None) numeric fields fall back to the worker configuration.
    """

    prompt: str
    instructions: str | None = None
    history: list[ChatHistoryItem] = field(default_factory=list)
    grammar: GrammarSource | None = None
    functions: dict[str, FunctionDefinition] = field(default_factory=dict)
    max_tokens: int | None = None
    temperature: float | None = None
    reasoning: bool = False
    use_context: bool = True
    max_contents: int | None = None
    max_chunks: int | None = None
    min_relevance: float | None = None
    starting_offset: int = 0


@dataclass
class JobResult:
    output: str | list[float]
    input_tokens: int = 0
    output_tokens: int = 0


def _new_job_id() -> str:
    return uuid.uuid4().hex[:12]


class GenerationPipeline:
    """Runs jobs against registered models.

    Args:
        registry: Model table; jobs for unregistered ids fail.
        pool: Source of sequences and embedding contexts.
        index: Retrieval source for prompt context.
        engine: Compiles grammars.
        config: Generation and retrieval defaults.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        pool: ContextPool,
        index: DocumentIndex,
        engine: InferenceEngine,
        config: LlamapoolConfig,
    ) -> None:
        self._registry = registry
        self._pool = pool
        self._index = index
        self._engine = engine
        self._config = config
        self._assembler = PromptAssembler(config.retrieval.history_budget_ratio)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, params: JobParameters, model_id: str) -> JobResult:
        """Run *params* on *model_id* and return the whole result.

        Raises:
            ModelNotInitializedError: If *model_id* is not registered.
        """
        entry = self._registry.entry(model_id)
        with log_context(job_id=_new_job_id()):
            match entry.modality:
                case OutputModality.VECTOR:
                    return await self._run_vector(params, model_id)
                case OutputModality.TEXT:
                    return await self._run_text(params, model_id)

    def stream(self, params: JobParameters, model_id: str) -> AsyncIterator[JobResult]:
        """Return an async iterator of result chunks for *params*.

        Validation happens here, before any engine call; generation starts on
        the first iteration. Close the iterator (``aclose()`` or
        ``contextlib.aclosing``) to stop early: the generation is cancelled and
        its resources released.

        Raises:
            ModelNotInitializedError: If *model_id* is not registered.
            UnsupportedOperationError: If *model_id* is a vector model.
        """
        entry = self._registry.entry(model_id)
        match entry.modality:
            case OutputModality.VECTOR:
                raise UnsupportedOperationError(
                    f"Model '{model_id}' produces vectors and cannot be streamed"
                )
            case OutputModality.TEXT:
                return self._stream_text(params, model_id)

    # ------------------------------------------------------------------
    # Vector jobs
    # ------------------------------------------------------------------

    async def _run_vector(self, params: JobParameters, model_id: str) -> JobResult:
        handle = await self._registry.acquire_handle(model_id)
        context = await self._pool.get_or_create_embedding_context(model_id, handle)
        text = clean_text(params.prompt)
        vector = l2_normalize(await context.embed(text))
        return JobResult(output=vector, input_tokens=len(handle.tokenize(text)))

    # ------------------------------------------------------------------
    # Text jobs
    # ------------------------------------------------------------------

    async def _run_text(self, params: JobParameters, model_id: str) -> JobResult:
        options = self._answer_options(params)
        rag_context = await self._retrieve(params)
        async with JobResources(self._registry, self._pool, model_id) as res:
            before = res.sequence.meter.snapshot()

            prefix = ""
            message = params.prompt
            if params.reasoning:
                prefix = wrap_reasoning(await self._reason(res, params, rag_context))
                message = prefix + params.prompt

            answer = await res.session.prompt(
                self._assemble(res, params, rag_context, message), options
            )
            logger.info("pipeline: %s answered (%d chars)", model_id, len(answer))
            return _result(prefix + answer, before, res.sequence.meter)

    async def _stream_text(
        self, params: JobParameters, model_id: str
    ) -> AsyncIterator[JobResult]:
        options = self._answer_options(params)
        rag_context = await self._retrieve(params)
        async with JobResources(self._registry, self._pool, model_id) as res:
            before = res.sequence.meter.snapshot()
            channel = TextChannel()

            async def produce() -> None:
                try:
                    message = params.prompt
                    if params.reasoning:
                        prefix = wrap_reasoning(await self._reason(res, params, rag_context))
                        await channel.send(prefix)
                        message = prefix + params.prompt
                    await res.session.prompt(
                        self._assemble(res, params, rag_context, message),
                        options,
                        on_text_chunk=channel.send,
                    )
                except Exception:
                    logger.exception("pipeline: streamed generation on %s failed", model_id)
                finally:
                    channel.close()

            with log_context(job_id=_new_job_id()):
                task = asyncio.create_task(produce())
            # Text that may be the start of an end marker split across chunks.
            held = ""
            try:
                async for text in channel:
                    held += text
                    head, marker, _ = held.partition(END_OF_TURN)
                    if marker:
                        held = head
                        break
                    cut = len(held) - _end_marker_prefix_len(held)
                    ready, held = held[:cut], held[cut:]
                    if ready:
                        yield _result(ready, before, res.sequence.meter)
                if held:
                    yield _result(held, before, res.sequence.meter)
            finally:
                if not task.done():
                    task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _retrieve(self, params: JobParameters) -> str:
        if not params.use_context or self._index.chunk_count == 0:
            return ""
        retrieval = self._config.retrieval
        return await self._index.retrieve(
            params.prompt,
            _pick(params.max_contents, retrieval.max_contents),
            _pick(params.max_chunks, retrieval.max_chunks),
            min_relevance=_pick(params.min_relevance, retrieval.min_relevance),
            starting_offset=params.starting_offset,
        )

    def _assemble(
        self,
        res: JobResources,
        params: JobParameters,
        rag_context: str,
        message: str,
    ) -> str:
        handle = res.handle
        assembled = self._assembler.assemble(
            params.instructions or self._config.generation.instructions,
            rag_context,
            params.history,
            message,
            self._assembler.budget_for(handle.train_context_size),
            handle.tokenize,
        )
        logger.debug(
            "pipeline: prompt of %d tokens, %d history turns",
            assembled.token_count,
            assembled.history_used,
        )
        return assembled.text

    def _answer_options(self, params: JobParameters) -> PromptOptions:
        return build_prompt_options(
            self._engine,
            max_tokens=self._max_tokens(params),
            temperature=self._temperature(params),
            grammar=params.grammar,
            functions=params.functions,
        )

    async def _reason(
        self, res: JobResources, params: JobParameters, rag_context: str
    ) -> str:
        """Run the reasoning pass, plus a refinement pass when it is too short."""
        options = PromptOptions(
            max_tokens=self._max_tokens(params),
            temperature=self._temperature(params),
        )
        reasoning = await res.session.prompt(
            self._assemble(res, params, rag_context, reasoning_prompt(params.prompt)),
            options,
        )
        if len(reasoning) < self._config.generation.reasoning_min_length:
            logger.debug("pipeline: reasoning too short (%d chars), refining", len(reasoning))
            refined = await res.session.prompt(
                self._assemble(
                    res, params, rag_context, refine_prompt(params.prompt, reasoning)
                ),
                options,
            )
            reasoning = f"{reasoning}\n{refined}"
        return reasoning

    def _max_tokens(self, params: JobParameters) -> int:
        return _pick(params.max_tokens, self._config.generation.max_tokens)

    def _temperature(self, params: JobParameters) -> float:
        return _pick(params.temperature, self._config.generation.temperature)


def _pick(value: T | None, default: T) -> T:
    return default if value is None else value


def _result(output: str, before: TokenMeter, meter: TokenMeter) -> JobResult:
    return JobResult(
        output=output,
        input_tokens=meter.input_tokens - before.input_tokens,
        output_tokens=meter.output_tokens - before.output_tokens,
    )


def _end_marker_prefix_len(text: str) -> int:
    """Length of the longest proper prefix of the end marker that ends *text*."""
    for size in range(min(len(text), len(END_OF_TURN) - 1), 0, -1):
        if text.endswith(END_OF_TURN[:size]):
            return size
    return 0
