"""Rich error messages: every error names the cause and the fix.

Usage:
    from llamapool.cli.errors import err_model_load
    console.print(err_model_load(exc))
    raise typer.Exit(1)
"""

from __future__ import annotations

from llamapool.errors import ResourceLoadError


def err_model_missing(path: str) -> str:
    """Weight file does not exist."""
    return (
        f"[red]Error:[/] Model file not found: '{path}'.\n"
        "  Check the path, or download the GGUF weights first."
    )


def err_model_load(exc: ResourceLoadError) -> str:
    """The engine rejected a weight file."""
    return (
        f"[red]Error:[/] Could not load model '{exc.model_id}' from '{exc.path}'.\n"
        f"  Cause: {exc.reason}\n"
        "  Check that the file is a complete GGUF model supported by llama.cpp."
    )


def err_config(message: str) -> str:
    """Invalid llamapool.yaml / ~/.llamapool/config.yaml / LLAMAPOOL_* value."""
    return (
        f"[red]Error:[/] Invalid configuration: {message}\n"
        "  Fix llamapool.yaml, ~/.llamapool/config.yaml or the LLAMAPOOL_* variables."
    )


def err_docs_need_embedding_model() -> str:
    """--doc given without a vector model to index it."""
    return (
        "[red]Error:[/] Indexing documents needs an embedding model.\n"
        "  Add:  --embedding-model PATH/TO/embedding.gguf"
    )


def err_unreadable_doc(path: str, reason: str) -> str:
    return (
        f"[red]Error:[/] Cannot read document '{path}': {reason}\n"
        "  Pass a readable UTF-8 text file."
    )


def err_job_failed(reason: str) -> str:
    return f"[red]Error:[/] Generation failed: {reason}"
