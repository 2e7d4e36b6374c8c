"""llamapool ask / embed CLI commands.

Each invocation is a one-shot workflow: the models are registered, documents
indexed, the job run, and the workflow released before the command exits.

Usage:
  llamapool ask "How do I reset it?" --model chat.gguf \\
      --embedding-model embed.gguf --doc manual.txt --stream
  llamapool embed "reset procedure" --model embed.gguf
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from llamapool.cli.errors import (
    err_config,
    err_docs_need_embedding_model,
    err_job_failed,
    err_model_load,
    err_model_missing,
    err_unreadable_doc,
)
from llamapool.config import ConfigError, LlamapoolConfig, load_config
from llamapool.engine.base import OutputModality
from llamapool.errors import LlamapoolError, ResourceLoadError
from llamapool.generate import JobParameters, JobResult
from llamapool.registry import ModelSource
from llamapool.worker import GenerativeWorker

console = Console()

_WORKFLOW_ID = "cli"
_TEXT_MODEL = "chat"
_VECTOR_MODEL = "embed"


def _load_cli_config(config_dir: Path | None) -> LlamapoolConfig:
    try:
        cfg = load_config(project_dir=config_dir)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)
    # Weight files passed on the command line belong to the user: never delete them.
    cfg.engine.remove_invalid_artifacts = False
    return cfg


def _check_model_path(path: Path) -> None:
    if not path.is_file():
        console.print(err_model_missing(str(path)))
        raise typer.Exit(1)


def _run(coro) -> JobResult:
    """Run *coro*, turning llamapool errors into console messages + exit 1."""
    try:
        return asyncio.run(coro)
    except ResourceLoadError as exc:
        console.print(err_model_load(exc))
        raise typer.Exit(1)
    except (LlamapoolError, ValueError) as exc:
        console.print(err_job_failed(str(exc)))
        raise typer.Exit(1)


def ask_cmd(
    prompt: Annotated[str, typer.Argument(help="Message to answer.")],
    model: Annotated[
        Path,
        typer.Option("--model", "-m", help="GGUF weights of the text model (required)."),
    ],
    embedding_model: Annotated[
        Path | None,
        typer.Option("--embedding-model", "-e", help="GGUF weights of the embedding model."),
    ] = None,
    docs: Annotated[
        list[Path] | None,
        typer.Option("--doc", "-d", help="Text file to index for retrieval (repeatable)."),
    ] = None,
    stream: Annotated[
        bool,
        typer.Option("--stream/--no-stream", help="Print the answer as it is generated."),
    ] = True,
    reasoning: Annotated[
        bool,
        typer.Option("--reasoning", help="Reason step by step before answering."),
    ] = False,
    grammar: Annotated[
        str | None,
        typer.Option("--grammar", "-g", help="Constrain output: json, json_array or boolean."),
    ] = None,
    max_tokens: Annotated[
        int | None,
        typer.Option("--max-tokens", help="Maximum tokens to generate."),
    ] = None,
    temperature: Annotated[
        float | None,
        typer.Option("--temperature", help="Sampling temperature."),
    ] = None,
    config_dir: Annotated[
        Path | None,
        typer.Option("--config", help="Directory containing llamapool.yaml (default: CWD)."),
    ] = None,
) -> None:
    """Answer PROMPT with a local model, optionally grounded in documents."""
    cfg = _load_cli_config(config_dir)
    _check_model_path(model)
    if embedding_model is not None:
        _check_model_path(embedding_model)
    if docs and embedding_model is None:
        console.print(err_docs_need_embedding_model())
        raise typer.Exit(1)

    contents: dict[str, str] = {}
    for doc in docs or []:
        try:
            contents[doc.name] = doc.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            console.print(err_unreadable_doc(str(doc), str(exc)))
            raise typer.Exit(1)

    models = {_TEXT_MODEL: ModelSource(str(model))}
    if embedding_model is not None:
        models[_VECTOR_MODEL] = ModelSource(str(embedding_model), OutputModality.VECTOR)

    params = JobParameters(
        prompt=prompt,
        grammar=grammar,
        max_tokens=max_tokens,
        temperature=temperature,
        reasoning=reasoning,
        use_context=bool(contents),
    )
    result = _run(_ask(cfg, models, contents, params, stream))
    console.print(
        f"[dim]tokens: {result.input_tokens:,} in / {result.output_tokens:,} out[/]"
    )


async def _ask(
    cfg: LlamapoolConfig,
    models: dict[str, ModelSource],
    contents: dict[str, str],
    params: JobParameters,
    stream: bool,
) -> JobResult:
    async with GenerativeWorker(cfg) as worker:
        await worker.register(_WORKFLOW_ID, models)
        try:
            for name, text in contents.items():
                doc = await worker.add_content(name, text)
                console.print(f"  [dim]✓ Indexed {name}: {doc.length} chunks[/]")

            if not stream:
                result = await worker.run_job(params, _TEXT_MODEL)
                console.print(result.output, markup=False, highlight=False)
                return result

            result = JobResult(output="")
            async with contextlib.aclosing(worker.stream_job(params, _TEXT_MODEL)) as chunks:
                async for chunk in chunks:
                    console.print(chunk.output, end="", markup=False, highlight=False)
                    result = chunk
            console.print()
            return result
        finally:
            await worker.release(_WORKFLOW_ID)


def embed_cmd(
    text: Annotated[str, typer.Argument(help="Text to embed.")],
    model: Annotated[
        Path,
        typer.Option("--model", "-m", help="GGUF weights of the embedding model (required)."),
    ],
    config_dir: Annotated[
        Path | None,
        typer.Option("--config", help="Directory containing llamapool.yaml (default: CWD)."),
    ] = None,
) -> None:
    """Print the normalised embedding of TEXT as a JSON array."""
    cfg = _load_cli_config(config_dir)
    _check_model_path(model)
    result = _run(_embed(cfg, str(model), text))
    typer.echo(json.dumps(result.output))


async def _embed(cfg: LlamapoolConfig, model: str, text: str) -> JobResult:
    async with GenerativeWorker(cfg) as worker:
        await worker.register(_WORKFLOW_ID, {_VECTOR_MODEL: ModelSource(model, OutputModality.VECTOR)})
        try:
            return await worker.run_job(JobParameters(prompt=text), _VECTOR_MODEL)
        finally:
            await worker.release(_WORKFLOW_ID)
