"""Generation pipeline and its helpers."""

from llamapool.generate.grammar import BOOLEAN_SCHEMA, build_prompt_options, resolve_grammar
from llamapool.generate.pipeline import GenerationPipeline, JobParameters, JobResult
from llamapool.generate.resources import JobResources
from llamapool.generate.stream import TextChannel

__all__ = [
    "BOOLEAN_SCHEMA",
    "GenerationPipeline",
    "JobParameters",
    "JobResources",
    "JobResult",
    "TextChannel",
    "build_prompt_options",
    "resolve_grammar",
]
