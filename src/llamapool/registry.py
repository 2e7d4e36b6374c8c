"""Model registry: shared model handles reference-counted by workflow.

Each model id has at most one ModelEntry. Workflows register interest in a
model and later release it; the entry (its handle and every context keyed to
it) is destroyed when no workflow references it any more.

Load policy:
  - text handles load lazily, on the first text job;
  - vector handles load eagerly at registration when no embedding context is
    live, because retrieval needs one before any text job runs;
  - only one text handle is loaded at a time: loading a text model first
    evicts every other loaded text model (after its in-flight sequences drain).

Two locks guard the table. The table lock covers membership changes and
vector loads and is never held while waiting for sequences to drain. Text
loads run under a second lock, held across the eviction they trigger, so only
one text load (and its eviction) is in progress at a time. Both use a
double-checked fast path, so concurrent acquirers of one id load it once.
Destroying an entry takes it out of the table under the table lock; its
contexts and handle are disposed after the lock is released.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from llamapool.config import ConfigError, EngineCfg
from llamapool.engine.base import (
    EmbeddingContext,
    InferenceEngine,
    ModelHandle,
    OutputModality,
    dispose_quietly,
)
from llamapool.errors import (
    EmbeddingContextNotInitializedError,
    ModelNotInitializedError,
    ModelNotRegisteredError,
    ResourceLoadError,
)
from llamapool.pool import ContextPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ModelSource:
    """Where a workflow's model lives and what it produces."""

    path: str
    modality: OutputModality = OutputModality.TEXT


@dataclass
class ModelEntry:
    id: str
    source_path: str
    modality: OutputModality
    handle: ModelHandle | None = None
    workflows: set[str] = field(default_factory=set)


class ModelRegistry:
    """Process-wide table of models, owned by one GenerativeWorker.

    Args:
        engine: Engine used to load weights.
        pool: Context pool whose contexts are disposed with their models.
        config: Engine configuration (artifact cleanup policy).
    """

    def __init__(
        self,
        engine: InferenceEngine,
        pool: ContextPool,
        config: EngineCfg | None = None,
    ) -> None:
        self._engine = engine
        self._pool = pool
        self._config = config or EngineCfg()
        self._entries: dict[str, ModelEntry] = {}
        self._lock = asyncio.Lock()
        self._text_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, model_id: str) -> ModelEntry | None:
        return self._entries.get(model_id)

    def entry(self, model_id: str) -> ModelEntry:
        """Return the entry for *model_id*.

        Raises:
            ModelNotInitializedError: If no workflow has registered *model_id*.
        """
        entry = self._entries.get(model_id)
        if entry is None:
            raise ModelNotInitializedError(model_id)
        return entry

    @property
    def model_ids(self) -> list[str]:
        return list(self._entries)

    def loaded_text_models(self) -> list[str]:
        return [
            e.id
            for e in self._entries.values()
            if e.modality is OutputModality.TEXT and e.handle is not None
        ]

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        workflow_id: str,
        model_id: str,
        source_path: str,
        modality: OutputModality,
    ) -> ModelEntry:
        """Add *workflow_id* to *model_id*'s references, creating the entry.

        Idempotent. Vector models are loaded (with an embedding context) right
        away when no embedding context is live; if that load fails the
        registration is rolled back and ResourceLoadError propagates.

        Raises:
            ConfigError: If *model_id* is already registered with another modality.
            ResourceLoadError: If an eager vector load fails.
        """
        entry = self._entries.get(model_id)
        if entry is None:
            entry = ModelEntry(id=model_id, source_path=source_path, modality=modality)
            self._entries[model_id] = entry
            logger.info("registry: registered %s (%s) from %s", model_id, modality.value, source_path)
        elif entry.modality is not modality:
            raise ConfigError(
                f"Model '{model_id}' is already registered as {entry.modality.value}, "
                f"not {modality.value}"
            )
        elif entry.source_path != source_path:
            logger.warning(
                "registry: %s already registered from %s; ignoring %s",
                model_id,
                entry.source_path,
                source_path,
            )

        entry.workflows.add(workflow_id)

        match modality:
            case OutputModality.VECTOR:
                if self._pool.embedding_context is None:
                    try:
                        handle = await self.acquire_handle(model_id)
                        await self._pool.get_or_create_embedding_context(model_id, handle)
                    except Exception:
                        await self._drop_reference(entry, workflow_id)
                        raise
            case OutputModality.TEXT:
                pass

        return entry

    async def register_models(
        self, workflow_id: str, models: dict[str, ModelSource]
    ) -> None:
        for model_id, source in models.items():
            await self.register(workflow_id, model_id, source.path, source.modality)

    async def release(self, workflow_id: str) -> None:
        """Drop *workflow_id*'s references; destroy entries nobody references.

        Safe to call repeatedly and for unknown workflows.
        """
        async with self._lock:
            doomed = []
            for entry in list(self._entries.values()):
                entry.workflows.discard(workflow_id)
                if not entry.workflows:
                    doomed.append(self._detach(entry))
        for model_id, handle in doomed:
            await self._dispose(model_id, handle)

    async def close(self) -> None:
        """Destroy every entry regardless of references."""
        async with self._lock:
            doomed = [self._detach(entry) for entry in list(self._entries.values())]
        for model_id, handle in doomed:
            await self._dispose(model_id, handle)

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    async def acquire_handle(self, model_id: str) -> ModelHandle:
        """Return *model_id*'s loaded handle, loading it if needed.

        Raises:
            ModelNotRegisteredError: If *model_id* was never registered.
            ResourceLoadError: If the engine cannot load the weights.
        """
        entry = self._entries.get(model_id)
        if entry is None:
            raise ModelNotRegisteredError(model_id)
        if entry.handle is not None:
            return entry.handle

        match entry.modality:
            case OutputModality.TEXT:
                async with self._text_lock:
                    return await self._load_text(model_id)
            case OutputModality.VECTOR:
                async with self._lock:
                    # Re-check: released or loaded while we waited for the lock.
                    entry = self._entries.get(model_id)
                    if entry is None:
                        raise ModelNotRegisteredError(model_id)
                    if entry.handle is None:
                        entry.handle = await self._load(entry)
                    return entry.handle

    def default_embedding_model(self) -> str:
        """Return the vector model retrieval uses when none is named.

        The model behind the live embedding context wins; otherwise the first
        registered vector model.

        Raises:
            EmbeddingContextNotInitializedError: If no vector model is registered.
        """
        live = self._pool.embedding_model_id
        if live is not None and live in self._entries:
            return live
        for entry in self._entries.values():
            if entry.modality is OutputModality.VECTOR:
                return entry.id
        raise EmbeddingContextNotInitializedError()

    async def embedding_context(self, model_id: str | None = None) -> EmbeddingContext:
        """Return the embedding context of *model_id*, building it if needed.

        Without *model_id* the default embedding model is used. Asking for a
        model other than the live one replaces the pool's embedding context.

        Raises:
            EmbeddingContextNotInitializedError: If *model_id* is not a
                registered vector model, or no vector model is registered.
        """
        if model_id is None:
            model_id = self.default_embedding_model()
        entry = self._entries.get(model_id)
        if entry is None or entry.modality is not OutputModality.VECTOR:
            raise EmbeddingContextNotInitializedError(model_id)

        context = self._pool.embedding_context
        if context is not None and self._pool.embedding_model_id == model_id:
            return context
        try:
            handle = await self.acquire_handle(model_id)
        except ModelNotRegisteredError as exc:
            raise EmbeddingContextNotInitializedError(model_id) from exc
        return await self._pool.get_or_create_embedding_context(model_id, handle)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_text(self, model_id: str) -> ModelHandle:
        entry = self._entries.get(model_id)
        if entry is None:
            raise ModelNotRegisteredError(model_id)
        if entry.handle is not None:
            return entry.handle

        async with self._lock:
            victims = []
            for other in self._entries.values():
                if other.id == model_id or other.modality is not OutputModality.TEXT:
                    continue
                if other.handle is not None:
                    logger.info("registry: evicting %s to load %s", other.id, model_id)
                    victims.append((other.id, other.handle))
                    other.handle = None

        # Waits for in-flight sequences of the victims; the table stays usable.
        for other_id, handle in victims:
            await self._pool.evict(other_id)
            await dispose_quietly(handle)

        handle = await self._load(entry)
        if self._entries.get(model_id) is not entry:
            # Released while loading.
            await dispose_quietly(handle)
            raise ModelNotRegisteredError(model_id)
        entry.handle = handle
        return handle

    async def _load(self, entry: ModelEntry) -> ModelHandle:
        try:
            handle = await self._engine.load_model(entry.source_path, entry.modality)
        except Exception as exc:
            logger.error("registry: failed to load %s from %s: %s", entry.id, entry.source_path, exc)
            self._remove_artifact(entry.source_path)
            raise ResourceLoadError(entry.id, entry.source_path, str(exc)) from exc
        logger.info("registry: loaded %s", entry.id)
        return handle

    def _remove_artifact(self, path: str) -> None:
        if not self._config.remove_invalid_artifacts:
            return
        artifact = Path(path)
        if not artifact.is_file():
            return
        try:
            artifact.unlink()
            logger.warning("registry: removed invalid model artifact %s", path)
        except OSError as exc:
            logger.warning("registry: could not remove %s: %s", path, exc)

    def _detach(self, entry: ModelEntry) -> tuple[str, ModelHandle | None]:
        """Take *entry* out of the table. Caller holds the table lock."""
        self._entries.pop(entry.id, None)
        handle, entry.handle = entry.handle, None
        return entry.id, handle

    async def _dispose(self, model_id: str, handle: ModelHandle | None) -> None:
        await self._pool.evict(model_id)
        await dispose_quietly(handle)
        logger.info("registry: destroyed %s", model_id)

    async def _drop_reference(self, entry: ModelEntry, workflow_id: str) -> None:
        entry.workflows.discard(workflow_id)
        if entry.workflows:
            return
        async with self._lock:
            if self._entries.get(entry.id) is not entry:
                return
            model_id, handle = self._detach(entry)
        await self._dispose(model_id, handle)
