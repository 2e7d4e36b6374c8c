"""Retrieval-augmented prompting: document index and prompt assembler."""

from llamapool.rag.assembler import (
    NO_CONTEXT,
    AssembledPrompt,
    ChatHistoryItem,
    PromptAssembler,
)
from llamapool.rag.index import Document, DocumentIndex, clean_text, l2_normalize

__all__ = [
    "NO_CONTEXT",
    "AssembledPrompt",
    "ChatHistoryItem",
    "Document",
    "DocumentIndex",
    "PromptAssembler",
    "clean_text",
    "l2_normalize",
]
