"""Abstract interface of the inference engine.

The core never talks to llama.cpp directly: the registry, pool and pipeline
depend only on the classes below. ``llamapool.engine.llama`` provides the
llama-cpp-python implementation.

Ownership chain (dispose in this order): ChatSession → ContextSequence →
ModelContext → ModelHandle.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from collections.abc import Awaitable, Callable

TextChunkCallback = Callable[[str], Awaitable[None]]

logger = logging.getLogger(__name__)


class OutputModality(enum.Enum):
    """What a model produces: generated text or an embedding vector."""

    TEXT = "text"
    VECTOR = "vector"


class GrammarKind(enum.Enum):
    JSON = "json"
    JSON_ARRAY = "json_array"
    BOOLEAN = "boolean"
    SCHEMA = "schema"


@dataclass(frozen=True, slots=True)
class GrammarSpec:
    """Engine-independent description of a grammar to compile.

    ``schema`` is set for BOOLEAN (the fixed result schema) and SCHEMA kinds.
    """

    kind: GrammarKind
    schema: dict[str, Any] | None = None


@dataclass(slots=True)
class FunctionDefinition:
    """A function the model may call while answering.

    Attributes:
        name: Name the model uses to call the function.
        handler: Called with the model-supplied params as keyword arguments.
            May return an awaitable.
        description: Shown to the model.
        params: JSON schema of the params object (None = no params).
    """

    name: str
    handler: Callable[..., Any]
    description: str = ""
    params: dict[str, Any] | None = None


@dataclass(slots=True)
class PromptOptions:
    """Per-call generation options handed to ChatSession.prompt()."""

    max_tokens: int
    temperature: float
    grammar: Any = None  # compiled by InferenceEngine.compile_grammar()
    functions: dict[str, FunctionDefinition] = field(default_factory=dict)


@dataclass(slots=True)
class TokenMeter:
    """Cumulative token counters of one sequence."""

    input_tokens: int = 0
    output_tokens: int = 0

    def snapshot(self) -> TokenMeter:
        return TokenMeter(self.input_tokens, self.output_tokens)


class Disposable(ABC):
    """Something holding engine memory that must be released explicitly."""

    @property
    @abstractmethod
    def disposed(self) -> bool:
        """True once dispose() has completed."""

    @abstractmethod
    async def dispose(self) -> None:
        """Release the underlying resources. Calling twice is a no-op."""


class ChatSession(Disposable):
    """Prompt interface bound to one sequence."""

    @abstractmethod
    async def prompt(
        self,
        text: str,
        options: PromptOptions,
        on_text_chunk: TextChunkCallback | None = None,
    ) -> str:
        """Generate a completion for *text*.

        Args:
            text: Fully assembled prompt.
            options: Token/temperature limits and output constraints.
            on_text_chunk: When given, awaited with each generated text piece
                as soon as it is produced.

        Returns:
            The complete generated text.
        """


class ContextSequence(Disposable):
    """An independent generation stream inside a context."""

    @property
    @abstractmethod
    def meter(self) -> TokenMeter:
        """Live token meter of this sequence."""

    @abstractmethod
    def create_session(self) -> ChatSession:
        """Build a chat session on this sequence."""


class ModelContext(Disposable):
    """Execution context of a text model with a fixed sequence capacity."""

    @property
    @abstractmethod
    def sequences_left(self) -> int:
        """Sequences that can still be handed out."""

    @abstractmethod
    def get_sequence(self) -> ContextSequence:
        """Allocate a sequence. Raises RuntimeError when none are left."""


class EmbeddingContext(Disposable):
    """Context dedicated to vector extraction."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the raw (unnormalised) embedding of *text*."""


class ModelHandle(Disposable):
    """A loaded model."""

    @property
    @abstractmethod
    def train_context_size(self) -> int:
        """Context length the model was trained with, in tokens."""

    @abstractmethod
    def tokenize(self, text: str) -> list[int]:
        ...

    @abstractmethod
    def detokenize(self, tokens: list[int]) -> str:
        ...

    @abstractmethod
    async def create_context(self, sequence_count: int) -> ModelContext:
        ...

    @abstractmethod
    async def create_embedding_context(self) -> EmbeddingContext:
        ...


class InferenceEngine(ABC):
    """Loads models and compiles grammars."""

    @abstractmethod
    async def load_model(self, path: str, modality: OutputModality) -> ModelHandle:
        """Load the weights at *path*. Raises on missing or invalid files."""

    @abstractmethod
    def compile_grammar(self, spec: GrammarSpec) -> Any:
        """Compile *spec* into an engine grammar usable in PromptOptions."""


async def dispose_quietly(*resources: Disposable | None) -> None:
    """Dispose *resources* in the given order, best effort.

    None and already disposed resources are skipped. Failures are logged and
    never raised, so cleanup during unwinding cannot mask the original error.
    """
    for resource in resources:
        if resource is None or resource.disposed:
            continue
        try:
            await resource.dispose()
        except Exception:
            logger.warning(
                "dispose failed for %s", type(resource).__name__, exc_info=True
            )


__all__ = [
    "ChatSession",
    "ContextSequence",
    "Disposable",
    "EmbeddingContext",
    "FunctionDefinition",
    "GrammarKind",
    "GrammarSpec",
    "InferenceEngine",
    "ModelContext",
    "ModelHandle",
    "OutputModality",
    "PromptOptions",
    "TextChunkCallback",
    "TokenMeter",
    "dispose_quietly",
]
