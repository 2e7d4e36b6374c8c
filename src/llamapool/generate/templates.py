"""Prompt templates of the two-pass reasoning mode."""

from __future__ import annotations

REASONING_PROMPT = (
    "Before answering, think about the following message step by step. "
    "Write down only your reasoning steps, do not write the final answer.\n\n"
    "Message: {prompt}"
)

REFINE_PROMPT = (
    "These are your first reasoning steps about a message:\n"
    "{reasoning}\n\n"
    "Expand them into more detailed reasoning steps. "
    "Do not write the final answer.\n\n"
    "Message: {prompt}"
)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

END_OF_TURN = "<|end|>"


def reasoning_prompt(prompt: str) -> str:
    return REASONING_PROMPT.format(prompt=prompt)


def refine_prompt(prompt: str, reasoning: str) -> str:
    return REFINE_PROMPT.format(prompt=prompt, reasoning=reasoning)


def wrap_reasoning(reasoning: str) -> str:
    """Wrap *reasoning* in think tags, ready to prefix an answer."""
    return f"{THINK_OPEN}\n{reasoning.strip()}\n{THINK_CLOSE}\n"
