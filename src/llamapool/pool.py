"""Context pool: pooled text contexts and the process-wide embedding context.

Text contexts use multi-sequence pooling: one context per model id, one
sequence per concurrent job. The context lives as long as it has active
sequences and is disposed when the last one is released. When every sequence
of a context is taken, acquire_sequence() waits for one to come back.

Only one embedding context is kept alive; asking for a different model's
embedding context disposes the current one first.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from llamapool.engine.base import (
    ContextSequence,
    EmbeddingContext,
    ModelContext,
    ModelHandle,
    dispose_quietly,
)

logger = logging.getLogger(__name__)


@dataclass
class _ContextSlot:
    model_id: str
    context: ModelContext
    active_sequences: int = 0


@dataclass
class _EmbeddingSlot:
    model_id: str
    context: EmbeddingContext


class ContextPool:
    """Per-model execution contexts shared by concurrent jobs.

    Args:
        sequence_count: Sequence capacity of every text context created here.
    """

    def __init__(self, sequence_count: int = 4) -> None:
        if sequence_count < 1:
            raise ValueError("sequence_count must be >= 1")
        self._sequence_count = sequence_count
        self._contexts: dict[str, _ContextSlot] = {}
        self._embedding: _EmbeddingSlot | None = None
        self._changed = asyncio.Condition()
        self._embedding_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Text contexts
    # ------------------------------------------------------------------

    async def get_or_create_context(
        self,
        model_id: str,
        handle: ModelHandle,
        sequence_count: int | None = None,
    ) -> ModelContext:
        """Return the cached context for *model_id*, creating it if needed."""
        async with self._changed:
            return (await self._slot(model_id, handle, sequence_count)).context

    async def acquire_sequence(
        self, model_id: str, handle: ModelHandle
    ) -> tuple[ModelContext, ContextSequence]:
        """Allocate a sequence on *model_id*'s context, waiting if all are taken."""
        async with self._changed:
            while True:
                slot = await self._slot(model_id, handle, None)
                if slot.context.sequences_left > 0:
                    sequence = slot.context.get_sequence()
                    slot.active_sequences += 1
                    return slot.context, sequence
                logger.debug("pool: waiting for a free sequence on %s", model_id)
                await self._changed.wait()

    async def release_sequence(self, model_id: str, sequence: ContextSequence) -> None:
        """Dispose *sequence*; dispose its context if it was the last one."""
        await dispose_quietly(sequence)
        async with self._changed:
            slot = self._contexts.get(model_id)
            if slot is not None:
                slot.active_sequences -= 1
                if slot.active_sequences <= 0:
                    del self._contexts[model_id]
                    await dispose_quietly(slot.context)
                    logger.debug("pool: disposed idle context of %s", model_id)
            self._changed.notify_all()

    def active_sequences(self, model_id: str) -> int:
        slot = self._contexts.get(model_id)
        return slot.active_sequences if slot is not None else 0

    def has_context(self, model_id: str) -> bool:
        return model_id in self._contexts

    async def _slot(
        self, model_id: str, handle: ModelHandle, sequence_count: int | None
    ) -> _ContextSlot:
        slot = self._contexts.get(model_id)
        if slot is not None and not slot.context.disposed:
            return slot
        context = await handle.create_context(sequence_count or self._sequence_count)
        slot = _ContextSlot(model_id=model_id, context=context)
        self._contexts[model_id] = slot
        logger.debug("pool: created context for %s", model_id)
        return slot

    # ------------------------------------------------------------------
    # Embedding context
    # ------------------------------------------------------------------

    @property
    def embedding_context(self) -> EmbeddingContext | None:
        slot = self._embedding
        if slot is None or slot.context.disposed:
            return None
        return slot.context

    @property
    def embedding_model_id(self) -> str | None:
        return self._embedding.model_id if self._embedding is not None else None

    async def get_or_create_embedding_context(
        self, model_id: str, handle: ModelHandle
    ) -> EmbeddingContext:
        """Return the embedding context for *model_id*, replacing any other."""
        async with self._embedding_lock:
            slot = self._embedding
            if slot is not None and slot.model_id == model_id and not slot.context.disposed:
                return slot.context
            if slot is not None:
                self._embedding = None
                await dispose_quietly(slot.context)
            context = await handle.create_embedding_context()
            self._embedding = _EmbeddingSlot(model_id=model_id, context=context)
            logger.debug("pool: created embedding context for %s", model_id)
            return context

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    async def evict(self, model_id: str) -> None:
        """Dispose every context keyed to *model_id* once its sequences drain."""
        async with self._changed:
            await self._changed.wait_for(lambda: self.active_sequences(model_id) == 0)
            slot = self._contexts.pop(model_id, None)
            if slot is not None:
                await dispose_quietly(slot.context)
            self._changed.notify_all()

        async with self._embedding_lock:
            embedding = self._embedding
            if embedding is not None and embedding.model_id == model_id:
                self._embedding = None
                await dispose_quietly(embedding.context)

    async def close(self) -> None:
        """Dispose all contexts without waiting for active sequences."""
        async with self._changed:
            slots = list(self._contexts.values())
            self._contexts.clear()
            await dispose_quietly(*(slot.context for slot in slots))
            self._changed.notify_all()
        async with self._embedding_lock:
            embedding = self._embedding
            if embedding is not None:
                self._embedding = None
                await dispose_quietly(embedding.context)
