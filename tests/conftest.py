"""Shared pytest fixtures: an in-memory inference engine and vector index."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Sequence

import pytest

from llamapool.config import LlamapoolConfig
from llamapool.db.connection import Database
from llamapool.engine.base import (
    ChatSession,
    ContextSequence,
    EmbeddingContext,
    GrammarSpec,
    InferenceEngine,
    ModelContext,
    ModelHandle,
    OutputModality,
    PromptOptions,
    TokenMeter,
)
from llamapool.pool import ContextPool
from llamapool.registry import ModelRegistry

# ---------------------------------------------------------------------------
# Fake engine
# ---------------------------------------------------------------------------


def letter_vector(text: str) -> list[float]:
    """26-dim letter histogram: texts with similar letters are close."""
    counts = [0.0] * 26
    for ch in text.lower():
        if "a" <= ch <= "z":
            counts[ord(ch) - ord("a")] += 1.0
    return counts


class FakeSession(ChatSession):
    def __init__(self, sequence: FakeSequence) -> None:
        self.sequence = sequence
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def dispose(self) -> None:
        self._disposed = True
        self.sequence.context.handle.engine.events.append("session.dispose")

    async def prompt(self, text, options: PromptOptions, on_text_chunk=None) -> str:
        handle = self.sequence.context.handle
        handle.prompts.append((text, options))
        meter = self.sequence.meter
        meter.input_tokens += len(handle.tokenize(text))
        if handle.fail_prompt is not None:
            raise handle.fail_prompt
        reply = handle.replies.pop(0) if handle.replies else "ok"
        # A list reply is streamed piece by piece exactly as given.
        if isinstance(reply, list):
            pieces, reply = reply, "".join(reply)
        else:
            pieces = re.findall(r"\S+\s*", reply)
        if on_text_chunk is None:
            meter.output_tokens += len(handle.tokenize(reply))
            return reply
        for piece in pieces:
            meter.output_tokens += 1
            await on_text_chunk(piece)
        return reply


class FakeSequence(ContextSequence):
    def __init__(self, context: FakeContext) -> None:
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
        return FakeSession(self)

    async def dispose(self) -> None:
        self._disposed = True
        self.context.active -= 1
        self.context.handle.engine.events.append("sequence.dispose")


class FakeContext(ModelContext):
    def __init__(self, handle: FakeHandle, capacity: int) -> None:
        self.handle = handle
        self.capacity = capacity
        self.active = 0
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def sequences_left(self) -> int:
        return self.capacity - self.active

    def get_sequence(self) -> ContextSequence:
        if self.sequences_left <= 0:
            raise RuntimeError("No sequences left in context")
        self.active += 1
        return FakeSequence(self)

    async def dispose(self) -> None:
        self._disposed = True
        self.handle.contexts_disposed += 1
        self.handle.engine.events.append("context.dispose")


class FakeEmbeddingContext(EmbeddingContext):
    def __init__(self, handle: FakeHandle) -> None:
        self.handle = handle
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def embed(self, text: str) -> list[float]:
        self.handle.embedded.append(text)
        if any(marker in text for marker in self.handle.engine.embed_failures):
            raise RuntimeError(f"cannot embed {text!r}")
        return letter_vector(text)

    async def dispose(self) -> None:
        self._disposed = True
        self.handle.embedding_contexts_disposed += 1


class FakeHandle(ModelHandle):
    def __init__(self, engine: FakeEngine, path: str, modality: OutputModality) -> None:
        self.engine = engine
        self.path = path
        self.modality = modality
        self.replies: list[str | list[str]] = []
        self.prompts: list[tuple[str, PromptOptions]] = []
        self.embedded: list[str] = []
        self.fail_prompt: Exception | None = None
        self.contexts_created = 0
        self.contexts_disposed = 0
        self.embedding_contexts_created = 0
        self.embedding_contexts_disposed = 0
        self.dispose_count = 0
        self._train_context_size = engine.train_context_size

    @property
    def disposed(self) -> bool:
        return self.dispose_count > 0

    @property
    def train_context_size(self) -> int:
        return self._train_context_size

    def tokenize(self, text: str) -> list[int]:
        return [len(word) for word in text.split()]

    def detokenize(self, tokens: list[int]) -> str:
        return " ".join("x" * t for t in tokens)

    async def create_context(self, sequence_count: int) -> ModelContext:
        self.contexts_created += 1
        return FakeContext(self, sequence_count)

    async def create_embedding_context(self) -> EmbeddingContext:
        self.embedding_contexts_created += 1
        return FakeEmbeddingContext(self)

    async def dispose(self) -> None:
        self.dispose_count += 1
        self.engine.events.append("handle.dispose")


class FakeEngine(InferenceEngine):
    """Records every load, disposal and grammar compilation."""

    def __init__(self, train_context_size: int = 4096) -> None:
        self.train_context_size = train_context_size
        self.loads: list[str] = []
        self.handles: list[FakeHandle] = []
        self.failing: set[str] = set()
        self.embed_failures: set[str] = set()
        self.compiled: list[GrammarSpec] = []
        self.events: list[str] = []

    async def load_model(self, path: str, modality: OutputModality) -> ModelHandle:
        self.loads.append(path)
        if path in self.failing:
            raise RuntimeError("invalid model file")
        handle = FakeHandle(self, path, modality)
        self.handles.append(handle)
        return handle

    def compile_grammar(self, spec: GrammarSpec):
        self.compiled.append(spec)
        return ("compiled", spec.kind)

    def handle_for(self, path: str) -> FakeHandle:
        """Most recently loaded handle of *path*."""
        return [h for h in self.handles if h.path == path][-1]


# ---------------------------------------------------------------------------
# Brute-force vector index
# ---------------------------------------------------------------------------


class ListVectorIndex:
    """VectorIndex over a Python list, exact cosine search."""

    def __init__(self) -> None:
        self.vectors: list[list[float]] = []

    @property
    def count(self) -> int:
        return len(self.vectors)

    def insert(self, vectors: Sequence[Sequence[float]]) -> list[int]:
        start = len(self.vectors)
        self.vectors.extend(list(v) for v in vectors)
        return list(range(start, len(self.vectors)))

    def remove(self, indices: Iterable[int]) -> None:
        drop = set(indices)
        self.vectors = [v for i, v in enumerate(self.vectors) if i not in drop]

    def search(self, vector, top_k, min_relevance=None, starting_offset=0) -> list[int]:
        def similarity(other: list[float]) -> float:
            return sum(a * b for a, b in zip(vector, other))

        ranked = sorted(range(len(self.vectors)), key=lambda i: -similarity(self.vectors[i]))
        if min_relevance is not None:
            ranked = [i for i in ranked if similarity(self.vectors[i]) >= min_relevance]
        return ranked[starting_offset:][:top_k]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> LlamapoolConfig:
    cfg = LlamapoolConfig()
    cfg.engine.sequences = 2
    cfg.chunking.max_length = 40
    return cfg


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def pool(config) -> ContextPool:
    return ContextPool(config.engine.sequences)


@pytest.fixture
def registry(engine, pool, config) -> ModelRegistry:
    return ModelRegistry(engine, pool, config.engine)


@pytest.fixture
def vector_index() -> ListVectorIndex:
    return ListVectorIndex()


@pytest.fixture
def vec_conn():
    """In-memory SQLite connection with sqlite-vec loaded, closed after test."""
    conn = Database(":memory:").connect()
    yield conn
    conn.close()


@pytest.fixture
def is_unit_vector():
    """Check that a vector has L2 norm 1."""

    def _is_unit(vector: Sequence[float]) -> bool:
        return math.isclose(math.sqrt(sum(v * v for v in vector)), 1.0, rel_tol=1e-9)

    return _is_unit


@pytest.fixture(autouse=True)
def _reset_llamapool_logger():
    """Undo configure_logging() so caplog sees records in later tests."""
    yield
    logger = logging.getLogger("llamapool")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
