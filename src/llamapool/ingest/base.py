"""Base chunker interface shared by the sentence and fixed-stride chunkers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Chunk:
    """One slice of a document, the unit of vector indexing and retrieval."""

    document: str
    chunk_index: int
    text: str


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Lengths are measured in characters, not tokens: ``max_length`` is a cheap
    stand-in for the model's tokenizer. Subclasses implement ``chunk()`` and
    may use ``_split_fixed_window()`` and ``_make_chunks()``.
    """

    def __init__(self, max_length: int = 500) -> None:
        if max_length < 1:
            raise ValueError("max_length must be >= 1")
        self.max_length = max_length

    @abstractmethod
    def chunk(self, document: str, content: str) -> list[Chunk]:
        """Split *content* into Chunk objects for *document*.

        Returns:
            Ordered list of Chunk objects with sequential ``chunk_index``,
            each at most ``max_length`` characters.
        """

    def _split_fixed_window(self, text: str) -> list[str]:
        """Split *text* into consecutive ``max_length`` character segments.

        Segments are stripped; empty segments are omitted.
        """
        segments: list[str] = []
        for pos in range(0, len(text), self.max_length):
            segment = text[pos : pos + self.max_length].strip()
            if segment:
                segments.append(segment)
        return segments

    @staticmethod
    def _make_chunks(document: str, texts: list[str]) -> list[Chunk]:
        return [Chunk(document=document, chunk_index=i, text=t) for i, t in enumerate(texts)]
