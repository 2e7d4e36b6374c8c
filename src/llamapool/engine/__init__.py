"""Inference engine interface and the llama.cpp implementation."""

from llamapool.engine.base import (
    ChatSession,
    ContextSequence,
    Disposable,
    EmbeddingContext,
    FunctionDefinition,
    GrammarKind,
    GrammarSpec,
    InferenceEngine,
    ModelContext,
    ModelHandle,
    OutputModality,
    PromptOptions,
    TokenMeter,
    dispose_quietly,
)
from llamapool.engine.llama import LlamaCppEngine

__all__ = [
    "ChatSession",
    "ContextSequence",
    "Disposable",
    "EmbeddingContext",
    "FunctionDefinition",
    "GrammarKind",
    "GrammarSpec",
    "InferenceEngine",
    "LlamaCppEngine",
    "ModelContext",
    "ModelHandle",
    "OutputModality",
    "PromptOptions",
    "TokenMeter",
    "dispose_quietly",
]
