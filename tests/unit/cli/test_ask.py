"""Tests for the llamapool ask / embed / version commands."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

import llamapool.cli.ask as ask_module
from llamapool.cli.main import app
from llamapool.worker import GenerativeWorker

runner = CliRunner()


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fake_worker(monkeypatch: pytest.MonkeyPatch, engine, vector_index):
    """Run CLI commands on the fake engine and an in-memory vector index."""

    def _make(cfg):
        return GenerativeWorker(cfg, engine=engine, vector_index=vector_index)

    monkeypatch.setattr(ask_module, "GenerativeWorker", _make)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "chat.gguf").write_bytes(b"gguf")
    (tmp_path / "embed.gguf").write_bytes(b"gguf")
    (tmp_path / "manual.txt").write_text(
        "Hold the reset button. Wait for the green light.", encoding="utf-8"
    )
    return tmp_path


def _ask(project: Path, *extra: str):
    return runner.invoke(
        app,
        [
            "ask",
            "How do I reset it?",
            "--model",
            str(project / "chat.gguf"),
            "--config",
            str(project),
            *extra,
        ],
    )


# ------------------------------------------------------------------
# ask
# ------------------------------------------------------------------


def test_ask_streams_answer(project: Path) -> None:
    result = _ask(project)

    assert result.exit_code == 0, result.output
    assert "ok" in result.output
    assert "tokens:" in result.output


def test_ask_no_stream(project: Path, engine) -> None:
    result = _ask(project, "--no-stream", "--max-tokens", "16")

    assert result.exit_code == 0, result.output
    assert "ok" in result.output
    _, options = engine.handle_for(str(project / "chat.gguf")).prompts[-1]
    assert options.max_tokens == 16


def test_ask_with_documents(project: Path, engine) -> None:
    result = _ask(
        project,
        "--embedding-model",
        str(project / "embed.gguf"),
        "--doc",
        str(project / "manual.txt"),
    )

    assert result.exit_code == 0, result.output
    assert "Indexed manual.txt" in result.output
    prompt, _ = engine.handle_for(str(project / "chat.gguf")).prompts[-1]
    assert "manual.txt: Hold the reset button." in prompt


def test_ask_releases_models(project: Path, engine) -> None:
    _ask(project, "--embedding-model", str(project / "embed.gguf"))

    assert engine.handles
    assert all(h.disposed for h in engine.handles)


def test_ask_docs_without_embedding_model(project: Path) -> None:
    result = _ask(project, "--doc", str(project / "manual.txt"))

    assert result.exit_code == 1
    assert "needs an embedding model" in result.output


def test_ask_missing_model_file(tmp_path: Path) -> None:
    result = runner.invoke(
        app, ["ask", "hi", "--model", str(tmp_path / "nope.gguf"), "--config", str(tmp_path)]
    )

    assert result.exit_code == 1
    assert "Model file not found" in result.output


def test_ask_unreadable_doc(project: Path) -> None:
    result = _ask(
        project,
        "--embedding-model",
        str(project / "embed.gguf"),
        "--doc",
        str(project / "missing.txt"),
    )

    assert result.exit_code == 1
    assert "Cannot read document" in result.output


def test_ask_model_load_failure(project: Path, engine) -> None:
    engine.failing.add(str(project / "chat.gguf"))

    result = _ask(project)

    assert result.exit_code == 1
    assert "Could not load model 'chat'" in result.output
    assert (project / "chat.gguf").exists()


def test_ask_unknown_grammar(project: Path) -> None:
    result = _ask(project, "--grammar", "xml")

    assert result.exit_code == 1
    assert "Generation failed" in result.output


def test_ask_invalid_config(project: Path) -> None:
    (project / "llamapool.yaml").write_text(
        yaml.dump({"engine": {"sequences": 0}}), encoding="utf-8"
    )

    result = _ask(project)

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


# ------------------------------------------------------------------
# embed
# ------------------------------------------------------------------


def test_embed_prints_unit_vector(project: Path) -> None:
    result = runner.invoke(
        app,
        [
            "embed",
            "Reset the device",
            "--model",
            str(project / "embed.gguf"),
            "--config",
            str(project),
        ],
    )

    assert result.exit_code == 0, result.output
    vector = json.loads(result.output)
    assert math.isclose(math.sqrt(sum(v * v for v in vector)), 1.0)


# ------------------------------------------------------------------
# version / logging
# ------------------------------------------------------------------


def test_version_command() -> None:
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert result.output.startswith("llamapool ")


def test_version_option() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert "llamapool" in result.output


def test_verbose_enables_debug_logging() -> None:
    result = runner.invoke(app, ["--verbose", "version"])

    assert result.exit_code == 0
    assert logging.getLogger("llamapool").level == logging.DEBUG


def test_default_logging_level_is_warning() -> None:
    runner.invoke(app, ["version"])

    assert logging.getLogger("llamapool").level == logging.WARNING
