"""Output constraints: grammar selection and prompt option building."""

from __future__ import annotations

from typing import Any

from llamapool.engine.base import (
    FunctionDefinition,
    GrammarKind,
    GrammarSpec,
    InferenceEngine,
    PromptOptions,
)

BOOLEAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"result": {"type": "boolean"}},
    "required": ["result"],
}

GrammarSource = str | dict[str, Any]


def resolve_grammar(grammar: GrammarSource | None) -> GrammarSpec | None:
    """Map a job's grammar parameter to a GrammarSpec.

    ``"json"`` and ``"json_array"`` select the built-in grammars, ``"boolean"``
    the fixed ``{"result": bool}`` schema; a dict is taken as a JSON schema.

    Raises:
        ValueError: For an unknown grammar name.
    """
    match grammar:
        case None:
            return None
        case "json":
            return GrammarSpec(GrammarKind.JSON)
        case "json_array":
            return GrammarSpec(GrammarKind.JSON_ARRAY)
        case "boolean":
            return GrammarSpec(GrammarKind.BOOLEAN, BOOLEAN_SCHEMA)
        case dict():
            return GrammarSpec(GrammarKind.SCHEMA, grammar)
        case _:
            raise ValueError(f"Unknown grammar {grammar!r}")


def build_prompt_options(
    engine: InferenceEngine,
    *,
    max_tokens: int,
    temperature: float,
    grammar: GrammarSource | None = None,
    functions: dict[str, FunctionDefinition] | None = None,
) -> PromptOptions:
    """Build the options of the answering pass.

    A grammar and functions are mutually exclusive: a grammar wins and the
    function set is dropped.
    """
    spec = resolve_grammar(grammar)
    if spec is not None:
        return PromptOptions(
            max_tokens=max_tokens,
            temperature=temperature,
            grammar=engine.compile_grammar(spec),
        )
    return PromptOptions(
        max_tokens=max_tokens,
        temperature=temperature,
        functions=dict(functions or {}),
    )
