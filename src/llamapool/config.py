"""llamapool configuration loader.

Priority (high → low):
  1. CLI flags           (applied by the caller, not in this module)
  2. Environment variables  (LLAMAPOOL_INSTRUCTIONS, LLAMAPOOL_MAX_TOKENS,
                             LLAMAPOOL_TEMPERATURE, LLAMAPOOL_GPU_LAYERS)
  3. Per-project llamapool.yaml
  4. Global ~/.llamapool/config.yaml
  5. Hardcoded defaults

The merged result is validated once by validate_config() and then passed by
reference to the worker; nothing downstream re-applies defaults.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".llamapool"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "llamapool.yaml"

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["engine", "generation", "retrieval", "chunking"]
)

_CHUNKING_STRATEGIES: frozenset[str] = frozenset(["sentence", "fixed"])

DEFAULT_INSTRUCTIONS = (
    "The following is a friendly conversation between a human and an AI. "
    "The AI is talkative and provides lots of specific details from its context. "
    "If the AI does not know the answer to a question, it will use concepts "
    "stored in memory that have very similar weights."
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class EngineCfg:
    """Inference engine configuration (llamapool.yaml: engine:).

    Attributes:
        gpu_layers: Layers offloaded to the GPU (-1 = all, 0 = CPU only).
        context_size: Context window per text context; 0 uses the model default.
        sequences: Sequence capacity of each pooled text context.
        remove_invalid_artifacts: Delete a weight file that fails to load.
        verbose: Forward llama.cpp's own logging to stderr.
    """

    gpu_layers: int = 0
    context_size: int = 0
    sequences: int = 4
    remove_invalid_artifacts: bool = True
    verbose: bool = False


@dataclass
class GenerationCfg:
    """Generation defaults (llamapool.yaml: generation:)."""

    instructions: str = DEFAULT_INSTRUCTIONS
    max_tokens: int = 1024
    temperature: float = 1.0
    reasoning_min_length: int = 500


@dataclass
class RetrievalCfg:
    """Retrieval configuration (llamapool.yaml: retrieval:).

    Attributes:
        max_contents: Number of vector-search hits used per prompt.
        max_chunks: Chunks per hit window, centred on the hit.
        min_relevance: Cosine similarity floor for hits (None = no floor).
        history_budget_ratio: Share of the model's trained context size that
            conversation history may use.
        db_path: sqlite database backing the vector index.
    """

    max_contents: int = 5
    max_chunks: int = 5
    min_relevance: float | None = None
    history_budget_ratio: float = 0.75
    db_path: str = ":memory:"


@dataclass
class ChunkingCfg:
    """Content chunking (llamapool.yaml: chunking:)."""

    strategy: str = "fixed"  # fixed | sentence
    max_length: int = 500    # characters, not tokens


@dataclass
class LlamapoolConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    engine: EngineCfg = field(default_factory=EngineCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def validate_config(cfg: LlamapoolConfig) -> LlamapoolConfig:
    """Raise ConfigError if any value is out of range. Returns *cfg* unchanged."""
    if cfg.engine.sequences < 1:
        raise ConfigError(f"engine.sequences must be >= 1, got {cfg.engine.sequences}")
    if cfg.engine.context_size < 0:
        raise ConfigError(
            f"engine.context_size must be >= 0, got {cfg.engine.context_size}"
        )
    if cfg.generation.max_tokens < 1:
        raise ConfigError(
            f"generation.max_tokens must be >= 1, got {cfg.generation.max_tokens}"
        )
    if cfg.generation.temperature < 0:
        raise ConfigError(
            f"generation.temperature must be >= 0, got {cfg.generation.temperature}"
        )
    if cfg.generation.reasoning_min_length < 0:
        raise ConfigError("generation.reasoning_min_length must be >= 0")
    if cfg.retrieval.max_contents < 1:
        raise ConfigError(
            f"retrieval.max_contents must be >= 1, got {cfg.retrieval.max_contents}"
        )
    if cfg.retrieval.max_chunks < 1:
        raise ConfigError(
            f"retrieval.max_chunks must be >= 1, got {cfg.retrieval.max_chunks}"
        )
    if not 0.0 < cfg.retrieval.history_budget_ratio <= 1.0:
        raise ConfigError(
            "retrieval.history_budget_ratio must be in (0, 1], "
            f"got {cfg.retrieval.history_budget_ratio}"
        )
    if cfg.chunking.strategy not in _CHUNKING_STRATEGIES:
        raise ConfigError(
            f"chunking.strategy must be one of {sorted(_CHUNKING_STRATEGIES)}, "
            f"got '{cfg.chunking.strategy}'"
        )
    if cfg.chunking.max_length < 1:
        raise ConfigError(
            f"chunking.max_length must be >= 1, got {cfg.chunking.max_length}"
        )
    return cfg


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _cfg_from_dict(data: dict[str, Any]) -> LlamapoolConfig:
    """Build a *LlamapoolConfig* from a merged raw YAML dict."""
    cfg = LlamapoolConfig()

    try:
        if "engine" in data:
            e = data["engine"] or {}
            cfg.engine = EngineCfg(
                gpu_layers=int(e.get("gpu_layers", cfg.engine.gpu_layers)),
                context_size=int(e.get("context_size", cfg.engine.context_size)),
                sequences=int(e.get("sequences", cfg.engine.sequences)),
                remove_invalid_artifacts=bool(
                    e.get("remove_invalid_artifacts", cfg.engine.remove_invalid_artifacts)
                ),
                verbose=bool(e.get("verbose", cfg.engine.verbose)),
            )

        if "generation" in data:
            g = data["generation"] or {}
            cfg.generation = GenerationCfg(
                instructions=str(g.get("instructions", cfg.generation.instructions)),
                max_tokens=int(g.get("max_tokens", cfg.generation.max_tokens)),
                temperature=float(g.get("temperature", cfg.generation.temperature)),
                reasoning_min_length=int(
                    g.get("reasoning_min_length", cfg.generation.reasoning_min_length)
                ),
            )

        if "retrieval" in data:
            r = data["retrieval"] or {}
            cfg.retrieval = RetrievalCfg(
                max_contents=int(r.get("max_contents", cfg.retrieval.max_contents)),
                max_chunks=int(r.get("max_chunks", cfg.retrieval.max_chunks)),
                min_relevance=_optional_float(
                    r.get("min_relevance", cfg.retrieval.min_relevance)
                ),
                history_budget_ratio=float(
                    r.get("history_budget_ratio", cfg.retrieval.history_budget_ratio)
                ),
                db_path=str(r.get("db_path", cfg.retrieval.db_path)),
            )

        if "chunking" in data:
            c = data["chunking"] or {}
            cfg.chunking = ChunkingCfg(
                strategy=str(c.get("strategy", cfg.chunking.strategy)),
                max_length=int(c.get("max_length", cfg.chunking.max_length)),
            )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    return cfg


def _apply_env_overrides(cfg: LlamapoolConfig) -> LlamapoolConfig:
    """Apply LLAMAPOOL_* environment variable overrides."""
    try:
        if value := os.environ.get("LLAMAPOOL_INSTRUCTIONS"):
            cfg.generation.instructions = value
        if value := os.environ.get("LLAMAPOOL_MAX_TOKENS"):
            cfg.generation.max_tokens = int(value)
        if value := os.environ.get("LLAMAPOOL_TEMPERATURE"):
            cfg.generation.temperature = float(value)
        if value := os.environ.get("LLAMAPOOL_GPU_LAYERS"):
            cfg.engine.gpu_layers = int(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid LLAMAPOOL_* environment value: {exc}") from exc
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> LlamapoolConfig:
    """Load, validate and return a merged *LlamapoolConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function
    (and re-validated with validate_config()).

    Args:
        project_dir: Directory to search for *llamapool.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If a value cannot be parsed or is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    return validate_config(cfg)
