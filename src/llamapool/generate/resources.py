"""Scoped ownership of the engine objects a text job uses."""

from __future__ import annotations

import logging

from llamapool.engine.base import (
    ChatSession,
    ContextSequence,
    ModelContext,
    ModelHandle,
    dispose_quietly,
)
from llamapool.pool import ContextPool
from llamapool.registry import ModelRegistry

logger = logging.getLogger(__name__)


class JobResources:
    """Async context manager holding a handle, a pooled sequence and a session.

    On exit (normal or not) the session is disposed, then the sequence is
    returned to the pool, which disposes the context after its last sequence.

    Usage::

        async with JobResources(registry, pool, "chat") as res:
            await res.session.prompt(text, options)
    """

    def __init__(self, registry: ModelRegistry, pool: ContextPool, model_id: str) -> None:
        self._registry = registry
        self._pool = pool
        self.model_id = model_id
        self.handle: ModelHandle | None = None
        self.context: ModelContext | None = None
        self.sequence: ContextSequence | None = None
        self.session: ChatSession | None = None

    async def __aenter__(self) -> JobResources:
        while True:
            handle = await self._registry.acquire_handle(self.model_id)
            context, sequence = await self._pool.acquire_sequence(self.model_id, handle)
            if not handle.disposed:
                break
            # Evicted between loading and getting a sequence; load it again.
            logger.debug("resources: %s was evicted before use, retrying", self.model_id)
            await self._pool.release_sequence(self.model_id, sequence)

        self.handle, self.context, self.sequence = handle, context, sequence
        try:
            self.session = sequence.create_session()
        except BaseException:
            await self.release()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()

    async def release(self) -> None:
        """Release everything held. Safe to call more than once."""
        session, self.session = self.session, None
        sequence, self.sequence = self.sequence, None
        await dispose_quietly(session)
        if sequence is not None:
            await self._pool.release_sequence(self.model_id, sequence)
        self.context = None
