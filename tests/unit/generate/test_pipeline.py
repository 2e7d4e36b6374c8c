"""Tests for the generation pipeline: sync, streaming, reasoning and vector jobs."""

from __future__ import annotations

import asyncio
import contextlib
import logging

import pytest

from llamapool.config import DEFAULT_INSTRUCTIONS
from llamapool.engine.base import GrammarKind, OutputModality
from llamapool.errors import (
    EmbeddingContextNotInitializedError,
    ModelNotInitializedError,
    UnsupportedOperationError,
)
from llamapool.generate import GenerationPipeline, JobParameters
from llamapool.ingest import SentenceChunker
from llamapool.rag import NO_CONTEXT, ChatHistoryItem, DocumentIndex

TEXT = OutputModality.TEXT
VECTOR = OutputModality.VECTOR


@pytest.fixture
def index(registry, vector_index) -> DocumentIndex:
    return DocumentIndex(registry, vector_index, SentenceChunker(20))


@pytest.fixture
def pipeline(registry, pool, index, engine, config) -> GenerationPipeline:
    return GenerationPipeline(registry, pool, index, engine, config)


async def _chat(registry, *replies: str | list[str]):
    """Register and load the text model, queueing *replies*."""
    await registry.register("wf", "chat", "chat.gguf", TEXT)
    handle = await registry.acquire_handle("chat")
    handle.replies.extend(replies)
    return handle


async def _collect(stream) -> list:
    async with contextlib.aclosing(stream) as chunks:
        return [chunk async for chunk in chunks]


# ------------------------------------------------------------------
# Acquire
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_unknown_model(pipeline):
    with pytest.raises(ModelNotInitializedError):
        await pipeline.run(JobParameters(prompt="hi"), "missing")


def test_stream_unknown_model_fails_on_call(pipeline):
    with pytest.raises(ModelNotInitializedError):
        pipeline.stream(JobParameters(prompt="hi"), "missing")


@pytest.mark.asyncio
async def test_stream_vector_model_fails_before_engine_call(pipeline, registry, engine):
    await registry.register("wf", "embed", "embed.gguf", VECTOR)
    handle = engine.handle_for("embed.gguf")
    loads_before = list(engine.loads)

    with pytest.raises(UnsupportedOperationError):
        pipeline.stream(JobParameters(prompt="hi"), "embed")

    assert engine.loads == loads_before
    assert handle.embedded == []
    assert handle.prompts == []


# ------------------------------------------------------------------
# Synchronous text jobs
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_text_job(pipeline, registry):
    handle = await _chat(registry, "Hello there")

    result = await pipeline.run(JobParameters(prompt="hi"), "chat")

    prompt, options = handle.prompts[-1]
    assert result.output == "Hello there"
    assert result.output_tokens == 2
    assert result.input_tokens == len(prompt.split())
    assert prompt.startswith(DEFAULT_INSTRUCTIONS)
    assert NO_CONTEXT in prompt
    assert prompt.endswith("Human: hi\nAI:")
    assert options.max_tokens == 1024
    assert options.temperature == 1.0


@pytest.mark.asyncio
async def test_run_loads_text_model_lazily(pipeline, registry, engine):
    await registry.register("wf", "chat", "chat.gguf", TEXT)
    assert engine.loads == []

    await pipeline.run(JobParameters(prompt="hi"), "chat")

    assert engine.loads == ["chat.gguf"]


@pytest.mark.asyncio
async def test_run_applies_overrides_and_history(pipeline, registry):
    handle = await _chat(registry)
    params = JobParameters(
        prompt="and now?",
        instructions="Be terse.",
        history=[ChatHistoryItem("human", "hello"), ChatHistoryItem("ai", "hi")],
        max_tokens=7,
        temperature=0.2,
    )

    await pipeline.run(params, "chat")

    prompt, options = handle.prompts[-1]
    assert prompt.startswith("Be terse.")
    assert "Human: hello\nAI: hi\nHuman: and now?\nAI:" in prompt
    assert (options.max_tokens, options.temperature) == (7, 0.2)


@pytest.mark.asyncio
async def test_run_with_grammar(pipeline, registry):
    handle = await _chat(registry, '{"result": true}')

    result = await pipeline.run(JobParameters(prompt="Is it on?", grammar="boolean"), "chat")

    assert result.output == '{"result": true}'
    assert handle.prompts[-1][1].grammar == ("compiled", GrammarKind.BOOLEAN)


@pytest.mark.asyncio
async def test_run_releases_resources_in_order(pipeline, registry, pool, engine):
    await _chat(registry)

    await pipeline.run(JobParameters(prompt="hi"), "chat")

    assert not pool.has_context("chat")
    assert engine.events[-3:] == ["session.dispose", "sequence.dispose", "context.dispose"]


@pytest.mark.asyncio
async def test_run_releases_resources_on_failure(pipeline, registry, pool, engine):
    handle = await _chat(registry)
    handle.fail_prompt = RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await pipeline.run(JobParameters(prompt="hi"), "chat")

    assert pool.active_sequences("chat") == 0
    assert engine.events[-3:] == ["session.dispose", "sequence.dispose", "context.dispose"]


# ------------------------------------------------------------------
# Retrieval
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_includes_retrieved_context(pipeline, registry, index):
    await registry.register("wf", "embed", "embed.gguf", VECTOR)
    handle = await _chat(registry)
    await index.add_document("fruit", "Apples are red. Bananas too ok.")

    await pipeline.run(JobParameters(prompt="Apples are red"), "chat")

    prompt = handle.prompts[-1][0]
    assert "Context:\nfruit: Apples are red." in prompt


@pytest.mark.asyncio
async def test_run_without_context(pipeline, registry, index):
    await registry.register("wf", "embed", "embed.gguf", VECTOR)
    handle = await _chat(registry)
    await index.add_document("fruit", "Apples are red. Bananas too ok.")

    await pipeline.run(JobParameters(prompt="Apples are red", use_context=False), "chat")

    assert NO_CONTEXT in handle.prompts[-1][0]


@pytest.mark.asyncio
async def test_retrieval_runs_before_a_sequence_is_held(
    pipeline, registry, pool, index, monkeypatch
):
    await registry.register("wf", "embed", "embed.gguf", VECTOR)
    await _chat(registry)
    await index.add_document("fruit", "Apples are red.")
    held: list[int] = []
    embedding_context = registry.embedding_context

    async def recording_embedding_context(model_id=None):
        held.append(pool.active_sequences("chat"))
        return await embedding_context(model_id)

    monkeypatch.setattr(registry, "embedding_context", recording_embedding_context)

    await pipeline.run(JobParameters(prompt="Apples are red"), "chat")
    await _collect(pipeline.stream(JobParameters(prompt="Apples are red"), "chat"))

    assert held == [0, 0]


@pytest.mark.asyncio
async def test_job_waiting_on_eviction_does_not_block_embedding(pipeline, registry, pool, index):
    await registry.register("wf", "v0", "v0.gguf", VECTOR)
    await registry.register("wf", "v1", "v1.gguf", VECTOR)
    await registry.register("wf", "a", "a.gguf", TEXT)
    await registry.register("wf", "b", "b.gguf", TEXT)
    await index.add_document("fruit", "Apples are red.")
    a = await registry.acquire_handle("a")
    a.replies.append("one two three")

    stream_a = pipeline.stream(JobParameters(prompt="Apples are red"), "a")
    first = await stream_a.__anext__()
    job_b = asyncio.create_task(pipeline.run(JobParameters(prompt="Apples are red"), "b"))
    await asyncio.sleep(0)
    assert not job_b.done()

    context = await asyncio.wait_for(registry.embedding_context("v1"), 1)
    assert context is pool.embedding_context

    await stream_a.aclose()
    result = await asyncio.wait_for(job_b, 1)
    assert first.output == "one "
    assert result.output == "ok"
    assert a.disposed


@pytest.mark.asyncio
async def test_query_embedded_with_the_index_model(pipeline, registry, index, engine):
    await registry.register("wf", "v1", "v1.gguf", VECTOR)
    await registry.register("wf", "v2", "v2.gguf", VECTOR)
    handle = await _chat(registry)
    await index.add_document("fruit", "Apples are red.")

    await pipeline.run(JobParameters(prompt="Hello"), "v2")
    await pipeline.run(JobParameters(prompt="Apples are red"), "chat")

    assert index.embedding_model_id == "v1"
    assert engine.handle_for("v1.gguf").embedded[-1] == "Apples are red"
    assert engine.handle_for("v2.gguf").embedded == ["hello"]
    assert "fruit: Apples are red." in handle.prompts[-1][0]


@pytest.mark.asyncio
async def test_retrieval_fails_once_the_index_model_is_released(pipeline, registry, index):
    await registry.register("wf-1", "v1", "v1.gguf", VECTOR)
    await registry.register("wf-2", "v2", "v2.gguf", VECTOR)
    await _chat(registry)
    await index.add_document("fruit", "Apples are red.")

    await registry.release("wf-1")

    with pytest.raises(EmbeddingContextNotInitializedError, match="'v1'"):
        await pipeline.run(JobParameters(prompt="Apples are red"), "chat")


# ------------------------------------------------------------------
# Reasoning
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_short_reasoning_is_refined(pipeline, registry):
    handle = await _chat(registry, "short steps", "more steps", "answer")

    result = await pipeline.run(JobParameters(prompt="why?", reasoning=True), "chat")

    assert result.output == "<think>\nshort steps\nmore steps\n</think>\nanswer"
    assert len(handle.prompts) == 3
    assert "short steps" in handle.prompts[1][0]
    assert "Human: <think>\nshort steps\nmore steps\n</think>\nwhy?\nAI:" in handle.prompts[2][0]
    assert result.output_tokens == 5
    assert result.input_tokens == sum(len(p.split()) for p, _ in handle.prompts)


@pytest.mark.asyncio
async def test_long_reasoning_is_not_refined(pipeline, registry):
    long_reasoning = "step " * 120
    handle = await _chat(registry, long_reasoning, "answer")

    result = await pipeline.run(JobParameters(prompt="why?", reasoning=True), "chat")

    assert len(handle.prompts) == 2
    assert result.output.startswith("<think>\nstep step")
    assert result.output.endswith("</think>\nanswer")


@pytest.mark.asyncio
async def test_reasoning_passes_are_unconstrained(pipeline, registry):
    handle = await _chat(registry, "x " * 300, "{}")

    await pipeline.run(JobParameters(prompt="why?", reasoning=True, grammar="json"), "chat")

    assert handle.prompts[0][1].grammar is None
    assert handle.prompts[1][1].grammar == ("compiled", GrammarKind.JSON)


# ------------------------------------------------------------------
# Vector jobs
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_vector_job_returns_normalised_embedding(pipeline, registry, engine, is_unit_vector):
    await registry.register("wf", "embed", "embed.gguf", VECTOR)
    handle = engine.handle_for("embed.gguf")

    result = await pipeline.run(JobParameters(prompt="  Hello, World! "), "embed")

    assert handle.embedded[-1] == "hello world"
    assert is_unit_vector(result.output)
    assert result.input_tokens == 2


# ------------------------------------------------------------------
# Streaming
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_yields_chunks(pipeline, registry, pool):
    await _chat(registry, "Hello big world")

    chunks = await _collect(pipeline.stream(JobParameters(prompt="hi"), "chat"))

    assert [c.output for c in chunks] == ["Hello ", "big ", "world"]
    assert chunks[-1].output_tokens == 3
    assert all(c.input_tokens > 0 for c in chunks)
    assert not pool.has_context("chat")


@pytest.mark.asyncio
async def test_stream_is_lazy(pipeline, registry):
    handle = await _chat(registry)

    stream = pipeline.stream(JobParameters(prompt="hi"), "chat")

    assert handle.prompts == []
    await _collect(stream)
    assert len(handle.prompts) == 1


@pytest.mark.asyncio
async def test_stream_stops_at_end_marker(pipeline, registry, pool):
    await _chat(registry, "Hi there<|end|> junk after")

    chunks = await _collect(pipeline.stream(JobParameters(prompt="hi"), "chat"))

    assert "".join(c.output for c in chunks) == "Hi there"
    assert pool.active_sequences("chat") == 0


@pytest.mark.asyncio
async def test_stream_stops_at_end_marker_split_across_chunks(pipeline, registry, pool):
    await _chat(registry, ["Hi", " there<|e", "nd|> junk"])

    chunks = await _collect(pipeline.stream(JobParameters(prompt="hi"), "chat"))

    assert [c.output for c in chunks] == ["Hi", " there"]
    assert pool.active_sequences("chat") == 0


@pytest.mark.asyncio
async def test_stream_releases_held_text_that_is_not_a_marker(pipeline, registry):
    await _chat(registry, ["a <", "b", " c<|"])

    chunks = await _collect(pipeline.stream(JobParameters(prompt="hi"), "chat"))

    assert [c.output for c in chunks] == ["a ", "<b", " c", "<|"]


@pytest.mark.asyncio
async def test_stream_error_ends_stream_and_is_logged(pipeline, registry, pool, caplog):
    handle = await _chat(registry)
    handle.fail_prompt = RuntimeError("engine crashed")

    with caplog.at_level(logging.ERROR, logger="llamapool.generate.pipeline"):
        chunks = await _collect(pipeline.stream(JobParameters(prompt="hi"), "chat"))

    assert chunks == []
    assert "streamed generation on chat failed" in caplog.text
    assert not pool.has_context("chat")


@pytest.mark.asyncio
async def test_stream_early_close_cancels_and_releases(pipeline, registry, pool, engine):
    await _chat(registry, "one two three four five six seven")

    stream = pipeline.stream(JobParameters(prompt="hi"), "chat")
    first = await stream.__anext__()
    await stream.aclose()

    assert first.output == "one "
    assert pool.active_sequences("chat") == 0
    assert not pool.has_context("chat")
    assert "session.dispose" in engine.events


@pytest.mark.asyncio
async def test_stream_with_reasoning_starts_with_think_block(pipeline, registry):
    await _chat(registry, "x " * 300, "final answer")

    chunks = await _collect(pipeline.stream(JobParameters(prompt="why?", reasoning=True), "chat"))

    assert chunks[0].output.startswith("<think>\n")
    assert chunks[0].output.endswith("</think>\n")
    assert "".join(c.output for c in chunks[1:]) == "final answer"
