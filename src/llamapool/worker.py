"""GenerativeWorker: the service object a workflow runtime talks to.

One worker owns one engine, one model registry, one context pool and one
document index. Nothing is module-global: two workers never share models.

Usage::

    async with GenerativeWorker(load_config()) as worker:
        await worker.register("wf-1", {
            "chat": ModelSource("models/chat.gguf"),
            "embed": ModelSource("models/embed.gguf", OutputModality.VECTOR),
        })
        await worker.add_content("manual", text)
        result = await worker.run_job(JobParameters(prompt="How do I reset it?"), "chat")
        await worker.release("wf-1")
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator, Mapping

from llamapool.config import LlamapoolConfig, validate_config
from llamapool.db import Database, SqliteVecIndex, VectorIndex
from llamapool.engine import InferenceEngine, LlamaCppEngine
from llamapool.generate import GenerationPipeline, JobParameters, JobResult
from llamapool.ingest import make_chunker
from llamapool.log_context import log_context
from llamapool.pool import ContextPool
from llamapool.rag import Document, DocumentIndex
from llamapool.registry import ModelRegistry, ModelSource

logger = logging.getLogger(__name__)


class GenerativeWorker:
    """Shares model handles between workflows and runs their jobs.

    Args:
        config: Validated configuration; defaults when omitted.
        engine: Inference engine; a LlamaCppEngine when omitted.
        vector_index: Vector store for retrieval; a sqlite-vec index at
            ``retrieval.db_path`` when omitted.
    """

    def __init__(
        self,
        config: LlamapoolConfig | None = None,
        *,
        engine: InferenceEngine | None = None,
        vector_index: VectorIndex | None = None,
    ) -> None:
        self.config = validate_config(config or LlamapoolConfig())
        self.engine = engine or LlamaCppEngine(self.config.engine)
        self.pool = ContextPool(self.config.engine.sequences)
        self.registry = ModelRegistry(self.engine, self.pool, self.config.engine)

        self._conn: sqlite3.Connection | None = None
        if vector_index is None:
            self._conn = Database(self.config.retrieval.db_path).connect()
            vector_index = SqliteVecIndex(self._conn)

        self.index = DocumentIndex(
            self.registry, vector_index, make_chunker(self.config.chunking)
        )
        self.pipeline = GenerationPipeline(
            self.registry, self.pool, self.index, self.engine, self.config
        )

    async def __aenter__(self) -> GenerativeWorker:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def register(self, workflow_id: str, models: Mapping[str, ModelSource]) -> None:
        """Reference *models* (model id → source) on behalf of *workflow_id*."""
        with log_context(workflow_id=workflow_id):
            await self.registry.register_models(workflow_id, dict(models))
            logger.info("worker: registered %d model(s)", len(models))

    async def release(self, workflow_id: str) -> None:
        """Drop *workflow_id*'s references; unused models are unloaded."""
        with log_context(workflow_id=workflow_id):
            await self.registry.release(workflow_id)
            logger.info("worker: released workflow")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_job(self, parameters: JobParameters, model_id: str) -> JobResult:
        return await self.pipeline.run(parameters, model_id)

    def stream_job(self, parameters: JobParameters, model_id: str) -> AsyncIterator[JobResult]:
        """Stream *parameters* on *model_id*; see GenerationPipeline.stream()."""
        return self.pipeline.stream(parameters, model_id)

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    async def add_content(self, name: str, content: str) -> Document:
        return await self.index.add_document(name, content)

    async def remove_content(self, name: str) -> bool:
        return await self.index.remove_document(name)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Unload every model and close the vector database.

        Contexts are disposed without waiting for in-flight jobs.
        """
        await self.pool.close()
        await self.registry.close()
        if self._conn is not None:
            self._conn.close()
            self._conn = None
