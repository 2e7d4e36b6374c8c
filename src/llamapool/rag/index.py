"""Document index: chunked content plus delegated vector search.

The index keeps one flat list of chunks. Each Document owns a contiguous run
``[start_index, start_index + length)`` of it, and position ``i`` of the flat
list is position ``i`` of the vector index. Adding and removing documents keeps
the three structures aligned:

  - add_document() removes any document with the same name first (replace),
    then appends the new chunks at the end;
  - remove_document() deletes the run from the vector index and the chunk list
    and shifts the start of every later document down by its length.

Every vector in the index comes from one embedding model, the one that embedded
the first document. Queries are embedded with that same model even after
another job has switched the pool to a different one. Once the index is empty
again the binding is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass

from llamapool.db.vectors import VectorIndex
from llamapool.engine.base import EmbeddingContext
from llamapool.errors import EmbeddingError
from llamapool.ingest.base import BaseChunker, Chunk
from llamapool.registry import ModelRegistry

logger = logging.getLogger(__name__)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


@dataclass
class Document:
    name: str
    start_index: int
    length: int

    @property
    def end_index(self) -> int:
        return self.start_index + self.length


def l2_normalize(vector: Sequence[float]) -> list[float]:
    """Scale *vector* to unit length. A zero vector is returned unchanged."""
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        return [float(v) for v in vector]
    return [v / norm for v in vector]


def clean_text(text: str) -> str:
    """Lower-case *text* and strip everything but letters, digits and spaces."""
    return _NON_ALNUM_RE.sub("", text.strip().lower())


class DocumentIndex:
    """Named documents, their chunks and the vectors searched at retrieval time.

    Args:
        registry: Provides the embedding context.
        vectors: Vector store; positions must match the flat chunk list.
        chunker: Splits document content into chunks.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        vectors: VectorIndex,
        chunker: BaseChunker,
    ) -> None:
        self._registry = registry
        self._vectors = vectors
        self._chunker = chunker
        self._chunks: list[Chunk] = []
        self._documents: dict[str, Document] = {}
        self._embedding_model_id: str | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def documents(self) -> list[Document]:
        return sorted(self._documents.values(), key=lambda d: d.start_index)

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def embedding_model_id(self) -> str | None:
        """Vector model the indexed chunks were embedded with, if any."""
        return self._embedding_model_id

    def get_document(self, name: str) -> Document | None:
        return self._documents.get(name)

    def chunks_of(self, name: str) -> list[Chunk]:
        doc = self._documents.get(name)
        if doc is None:
            return []
        return self._chunks[doc.start_index : doc.end_index]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def add_document(self, name: str, content: str) -> Document:
        """Index *content* under *name*, replacing any previous version.

        Chunks that fail to embed are logged and left out; they never reach
        the vector index or the chunk list.

        Raises:
            EmbeddingContextNotInitializedError: If no vector model is registered,
                or the one the index was built with has been released.
        """
        async with self._lock:
            model_id = self._embedding_model_id or self._registry.default_embedding_model()
            context = await self._registry.embedding_context(model_id)
            self._remove(name)

            chunks = self._chunker.chunk(name, content)

            kept: list[Chunk] = []
            vectors: list[list[float]] = []
            for chunk in chunks:
                try:
                    vector = await self._embed_chunk(context, chunk)
                except EmbeddingError as exc:
                    logger.warning("index: skipping chunk %d of %s: %s", chunk.chunk_index, name, exc)
                    continue
                kept.append(chunk)
                vectors.append(vector)

            self._vectors.insert(vectors)
            doc = Document(name=name, start_index=len(self._chunks), length=len(kept))
            self._chunks.extend(kept)
            self._documents[name] = doc
            self._embedding_model_id = model_id if self._chunks else None
            logger.info(
                "index: added %s (%d/%d chunks embedded)", name, len(kept), len(chunks)
            )
            return doc

    async def remove_document(self, name: str) -> bool:
        """Remove *name* and its chunks. Returns False if it is not indexed."""
        async with self._lock:
            return self._remove(name)

    def _remove(self, name: str) -> bool:
        doc = self._documents.pop(name, None)
        if doc is None:
            return False

        self._vectors.remove(range(doc.start_index, doc.end_index))
        del self._chunks[doc.start_index : doc.end_index]
        for other in self._documents.values():
            if other.start_index > doc.start_index:
                other.start_index -= doc.length
        if not self._chunks:
            self._embedding_model_id = None
        logger.info("index: removed %s (%d chunks)", name, doc.length)
        return True

    @staticmethod
    async def _embed_chunk(context: EmbeddingContext, chunk: Chunk) -> list[float]:
        try:
            vector = await context.embed(chunk.text)
        except Exception as exc:
            raise EmbeddingError(str(exc) or type(exc).__name__) from exc
        if not vector:
            raise EmbeddingError("engine returned an empty vector")
        return l2_normalize(vector)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        max_hits: int,
        max_chunks: int,
        min_relevance: float | None = None,
        starting_offset: int = 0,
    ) -> str:
        """Return context text for *query*: one chunk window per hit, best first.

        Each window holds up to *max_chunks* consecutive chunks starting
        ``max_chunks // 2`` before the hit, clipped to the hit's document, and
        is prefixed with the document name. Windows are separated by a blank
        line. An empty index yields ``""``.

        Raises:
            EmbeddingContextNotInitializedError: If the vector model the index
                was built with has been released.
        """
        if not self._chunks or max_hits < 1:
            return ""

        context = await self._registry.embedding_context(self._embedding_model_id)
        query_vector = l2_normalize(await context.embed(query))
        hits = self._vectors.search(
            query_vector,
            max_hits,
            min_relevance=min_relevance,
            starting_offset=starting_offset,
        )

        windows: list[str] = []
        for hit in hits:
            if not 0 <= hit < len(self._chunks):
                logger.warning("index: vector search returned out-of-range hit %d", hit)
                continue
            windows.append(self._window(hit, max(1, max_chunks)))
        return "\n\n".join(windows)

    def _window(self, hit: int, max_chunks: int) -> str:
        doc = self._owner(hit)
        start = hit - max_chunks // 2
        end = start + max_chunks
        if doc is not None:
            start = max(start, doc.start_index)
            end = min(end, doc.end_index)
        else:
            start = max(start, 0)
            end = min(end, len(self._chunks))
        text = " ".join(chunk.text for chunk in self._chunks[start:end])
        return f"{doc.name}: {text}" if doc is not None else text

    def _owner(self, index: int) -> Document | None:
        for doc in self._documents.values():
            if doc.start_index <= index < doc.end_index:
                return doc
        return None
