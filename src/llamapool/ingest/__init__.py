"""Document chunkers."""

from __future__ import annotations

from llamapool.config import ChunkingCfg
from llamapool.ingest.base import BaseChunker, Chunk
from llamapool.ingest.plaintext import FixedLengthChunker
from llamapool.ingest.sentences import SentenceChunker, split_sentences


def make_chunker(config: ChunkingCfg) -> BaseChunker:
    """Build the chunker selected by ``chunking.strategy``."""
    match config.strategy:
        case "sentence":
            return SentenceChunker(max_length=config.max_length)
        case "fixed":
            return FixedLengthChunker(max_length=config.max_length)
        case other:
            raise ValueError(f"Unknown chunking strategy '{other}'")


__all__ = [
    "BaseChunker",
    "Chunk",
    "FixedLengthChunker",
    "SentenceChunker",
    "make_chunker",
    "split_sentences",
]
