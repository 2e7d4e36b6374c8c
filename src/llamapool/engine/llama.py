"""llama-cpp-python implementation of the engine interface.

One ``llama_cpp.Llama`` object owns both the weights and a single KV cache, so
a ModelContext here is a view over the handle's Llama with a sequence
capacity; sequences of the same context take turns on a shared asyncio.Lock.
All blocking llama.cpp calls run in worker threads (asyncio.to_thread) so the
event loop keeps serving other jobs.

llama_cpp is imported lazily: loading the package never requires the native
library, only loading a model does.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import inspect
import json
import logging
import threading
from pathlib import Path
from typing import Any

from llamapool.config import EngineCfg
from llamapool.engine.base import (
    ChatSession,
    ContextSequence,
    EmbeddingContext,
    GrammarKind,
    GrammarSpec,
    InferenceEngine,
    ModelContext,
    ModelHandle,
    OutputModality,
    PromptOptions,
    TextChunkCallback,
    TokenMeter,
)

logger = logging.getLogger(__name__)

_MAX_FUNCTION_ROUNDS = 4
_CHUNK_HANDOFF_POLL_S = 0.1


class LlamaCppEngine(InferenceEngine):
    """Loads GGUF weights through llama-cpp-python."""

    def __init__(self, config: EngineCfg | None = None) -> None:
        self._config = config or EngineCfg()

    async def load_model(self, path: str, modality: OutputModality) -> ModelHandle:
        if not Path(path).is_file():
            raise FileNotFoundError(f"Model file not found: {path}")

        cfg = self._config

        def _load() -> Any:
            from llama_cpp import Llama

            return Llama(
                model_path=path,
                n_ctx=cfg.context_size,
                n_gpu_layers=cfg.gpu_layers,
                embedding=modality is OutputModality.VECTOR,
                verbose=cfg.verbose,
            )

        logger.info("llama: loading %s (%s)", path, modality.value)
        llm = await asyncio.to_thread(_load)
        return LlamaCppModel(llm, modality)

    def compile_grammar(self, spec: GrammarSpec) -> Any:
        from llama_cpp import LlamaGrammar
        from llama_cpp.llama_grammar import JSON_ARR_GBNF, JSON_GBNF

        verbose = self._config.verbose
        match spec.kind:
            case GrammarKind.JSON:
                return LlamaGrammar.from_string(JSON_GBNF, verbose=verbose)
            case GrammarKind.JSON_ARRAY:
                return LlamaGrammar.from_string(JSON_ARR_GBNF, verbose=verbose)
            case GrammarKind.BOOLEAN | GrammarKind.SCHEMA:
                return LlamaGrammar.from_json_schema(
                    json.dumps(spec.schema or {}), verbose=verbose
                )


class LlamaCppModel(ModelHandle):
    def __init__(self, llm: Any, modality: OutputModality) -> None:
        self._llm = llm
        self._modality = modality
        self._disposed = False

    @property
    def llm(self) -> Any:
        return self._llm

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def train_context_size(self) -> int:
        return int(self._llm._model.n_ctx_train())

    def tokenize(self, text: str) -> list[int]:
        if not text:
            return []
        return list(self._llm.tokenize(text.encode("utf-8"), add_bos=False, special=False))

    def detokenize(self, tokens: list[int]) -> str:
        return self._llm.detokenize(tokens).decode("utf-8", errors="ignore")

    async def create_context(self, sequence_count: int) -> ModelContext:
        return LlamaCppContext(self, sequence_count)

    async def create_embedding_context(self) -> EmbeddingContext:
        return LlamaCppEmbeddingContext(self)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        close = getattr(self._llm, "close", None)
        if close is not None:
            await asyncio.to_thread(close)


class LlamaCppContext(ModelContext):
    def __init__(self, model: LlamaCppModel, capacity: int) -> None:
        self.model = model
        self.lock = asyncio.Lock()
        self._capacity = capacity
        self._active = 0
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def sequences_left(self) -> int:
        return self._capacity - self._active

    def get_sequence(self) -> ContextSequence:
        if self._disposed:
            raise RuntimeError("Context is disposed")
        if self.sequences_left <= 0:
            raise RuntimeError("No sequences left in context")
        self._active += 1
        return LlamaCppSequence(self)

    def _return_sequence(self) -> None:
        self._active -= 1

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if not self.model.disposed:
            self.model.llm.reset()


class LlamaCppSequence(ContextSequence):
    def __init__(self, context: LlamaCppContext) -> None:
        self.context = context
        self._meter = TokenMeter()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def meter(self) -> TokenMeter:
        return self._meter

    def create_session(self) -> ChatSession:
        return LlamaCppSession(self)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.context._return_sequence()


class LlamaCppSession(ChatSession):
    """Completion-style session: every prompt() call is self-contained."""

    def __init__(self, sequence: LlamaCppSequence) -> None:
        self._sequence = sequence
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def dispose(self) -> None:
        self._disposed = True

    async def prompt(
        self,
        text: str,
        options: PromptOptions,
        on_text_chunk: TextChunkCallback | None = None,
    ) -> str:
        if self._disposed:
            raise RuntimeError("Session is disposed")
        async with self._sequence.context.lock:
            if options.functions:
                output = await self._prompt_with_functions(text, options)
                if on_text_chunk is not None and output:
                    await on_text_chunk(output)
                return output
            if on_text_chunk is None:
                return await self._complete(text, options, options.grammar)
            return await self._stream(text, options, on_text_chunk)

    # ------------------------------------------------------------------
    # One-shot
    # ------------------------------------------------------------------

    async def _complete(self, text: str, options: PromptOptions, grammar: Any) -> str:
        llm = self._sequence.context.model.llm
        response = await asyncio.to_thread(
            llm.create_completion,
            prompt=text,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            grammar=grammar,
        )
        usage = response.get("usage") or {}
        self._sequence.meter.input_tokens += int(usage.get("prompt_tokens", 0))
        self._sequence.meter.output_tokens += int(usage.get("completion_tokens", 0))
        return response["choices"][0]["text"] or ""

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream(
        self, text: str, options: PromptOptions, on_text_chunk: TextChunkCallback
    ) -> str:
        loop = asyncio.get_running_loop()
        cancel = threading.Event()
        self._sequence.meter.input_tokens += len(self._sequence.context.model.tokenize(text))

        worker = asyncio.ensure_future(
            asyncio.to_thread(self._run_stream, text, options, on_text_chunk, loop, cancel)
        )
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            # The thread still owns the Llama object; wait for it to notice.
            cancel.set()
            with contextlib.suppress(Exception):
                await worker
            raise

    def _run_stream(
        self,
        text: str,
        options: PromptOptions,
        on_text_chunk: TextChunkCallback,
        loop: asyncio.AbstractEventLoop,
        cancel: threading.Event,
    ) -> str:
        llm = self._sequence.context.model.llm
        iterator = llm.create_completion(
            prompt=text,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            grammar=options.grammar,
            stream=True,
        )
        parts: list[str] = []
        try:
            for chunk in iterator:
                if cancel.is_set():
                    break
                piece = chunk["choices"][0]["text"]
                if not piece:
                    continue
                self._sequence.meter.output_tokens += 1
                parts.append(piece)
                if not self._hand_off(piece, on_text_chunk, loop, cancel):
                    break
        finally:
            iterator.close()
        return "".join(parts)

    @staticmethod
    def _hand_off(
        piece: str,
        on_text_chunk: TextChunkCallback,
        loop: asyncio.AbstractEventLoop,
        cancel: threading.Event,
    ) -> bool:
        """Deliver *piece* on the event loop; False if cancelled while waiting."""
        future = asyncio.run_coroutine_threadsafe(on_text_chunk(piece), loop)
        while True:
            try:
                future.result(timeout=_CHUNK_HANDOFF_POLL_S)
                return True
            except concurrent.futures.TimeoutError:
                if cancel.is_set():
                    future.cancel()
                    return False

    # ------------------------------------------------------------------
    # Function calling
    # ------------------------------------------------------------------

    async def _prompt_with_functions(self, text: str, options: PromptOptions) -> str:
        from llama_cpp import LlamaGrammar

        schema = _function_call_schema(options)
        grammar = LlamaGrammar.from_json_schema(json.dumps(schema), verbose=False)
        transcript = _describe_functions(options) + text

        for _ in range(_MAX_FUNCTION_ROUNDS):
            raw = await self._complete(transcript, options, grammar)
            try:
                call = json.loads(raw)
            except json.JSONDecodeError:
                return raw
            if "function" not in call:
                return str(call.get("answer", ""))

            fn = options.functions[call["function"]]
            result = fn.handler(**(call.get("params") or {}))
            if inspect.isawaitable(result):
                result = await result
            logger.debug("llama: function %s returned %r", fn.name, result)
            transcript += f"{raw}\nFunction {fn.name} returned: {json.dumps(result, default=str)}\n"

        return await self._complete(transcript, options, None)


def _function_call_schema(options: PromptOptions) -> dict[str, Any]:
    calls = [
        {
            "type": "object",
            "properties": {
                "function": {"const": fn.name},
                "params": fn.params or {"type": "object"},
            },
            "required": ["function", "params"],
        }
        for fn in options.functions.values()
    ]
    answer = {
        "type": "object",
        "properties": {"answer": {"type": "string"}},
        "required": ["answer"],
    }
    return {"oneOf": [*calls, answer]}


def _describe_functions(options: PromptOptions) -> str:
    lines = ["You can call these functions by answering with a JSON function call:"]
    for fn in options.functions.values():
        lines.append(f"- {fn.name}: {fn.description}".rstrip(": "))
    return "\n".join(lines) + "\nAnswer with {\"answer\": ...} once you are done.\n\n"


class LlamaCppEmbeddingContext(EmbeddingContext):
    def __init__(self, model: LlamaCppModel) -> None:
        self._model = model
        self._lock = asyncio.Lock()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def embed(self, text: str) -> list[float]:
        if self._disposed:
            raise RuntimeError("Embedding context is disposed")
        async with self._lock:
            vector = await asyncio.to_thread(self._model.llm.embed, text)
        # Models without pooling return one vector per token; average them.
        if vector and isinstance(vector[0], list):
            width = len(vector[0])
            vector = [sum(row[i] for row in vector) / len(vector) for i in range(width)]
        return [float(v) for v in vector]

    async def dispose(self) -> None:
        self._disposed = True
