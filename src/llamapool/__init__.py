"""llamapool: shared local language models, retrieval and generation jobs."""

from llamapool.config import LlamapoolConfig, load_config
from llamapool.engine.base import OutputModality
from llamapool.generate import JobParameters, JobResult
from llamapool.rag import ChatHistoryItem
from llamapool.registry import ModelSource
from llamapool.worker import GenerativeWorker

__all__ = [
    "ChatHistoryItem",
    "GenerativeWorker",
    "JobParameters",
    "JobResult",
    "LlamapoolConfig",
    "ModelSource",
    "OutputModality",
    "load_config",
]
