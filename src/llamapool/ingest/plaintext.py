"""Fixed-stride chunker."""

from __future__ import annotations

from llamapool.ingest.base import BaseChunker, Chunk


class FixedLengthChunker(BaseChunker):
    """Slice content every ``max_length`` characters, ignoring structure."""

    def chunk(self, document: str, content: str) -> list[Chunk]:
        if not content.strip():
            return []
        return self._make_chunks(document, self._split_fixed_window(content))
