"""Prompt assembler: instructions, retrieved context and budgeted history.

Prompt layout::

    {instructions}

    Context:
    {retrieved context}

    Conversation:
    {history turns, oldest first}Human: {new message}
    AI:

History is walked newest to oldest and kept while the running token count
(which starts at the size of everything except history) stays within the
budget. The first turn that does not fit stops the walk, so the oldest turns
are dropped first and no turn is ever cut in half.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Literal

NO_CONTEXT = "Context: No relevant context was retrieved."

Tokenize = Callable[[str], Sequence[int]]


@dataclass(frozen=True, slots=True)
class ChatHistoryItem:
    source: Literal["human", "ai"]
    message: str

    @property
    def label(self) -> str:
        return "AI" if self.source == "ai" else "Human"


@dataclass
class AssembledPrompt:
    """The final prompt text and what went into it."""

    text: str
    token_count: int
    history_used: int


class PromptAssembler:
    """Builds generation prompts under a history token budget.

    Args:
        history_budget_ratio: Share of the model's trained context size that
            the assembled prompt may use.
    """

    def __init__(self, history_budget_ratio: float = 0.75) -> None:
        if not 0.0 < history_budget_ratio <= 1.0:
            raise ValueError("history_budget_ratio must be in (0, 1]")
        self.history_budget_ratio = history_budget_ratio

    def budget_for(self, train_context_size: int) -> int:
        return int(train_context_size * self.history_budget_ratio)

    def assemble(
        self,
        instructions: str,
        rag_context: str | None,
        history: Sequence[ChatHistoryItem],
        new_message: str,
        token_budget: int,
        tokenize: Tokenize,
    ) -> AssembledPrompt:
        """Assemble the prompt for *new_message*.

        Args:
            instructions: System instructions opening the prompt.
            rag_context: Retrieved context; empty or None uses the
                "no relevant context" marker.
            history: Previous turns, oldest first.
            new_message: The message being answered.
            token_budget: Maximum tokens for the whole prompt's history walk.
            tokenize: The target model's tokenizer.
        """
        context_block = f"Context:\n{rag_context}" if rag_context else NO_CONTEXT
        preamble = f"{instructions}\n\n{context_block}\n\nConversation:\n"
        tail = f"Human: {new_message}\nAI:"

        used = len(tokenize(preamble)) + len(tokenize(tail))
        turns: list[str] = []
        for item in reversed(history):
            line = f"{item.label}: {item.message}\n"
            cost = len(tokenize(line))
            if used + cost > token_budget:
                break
            turns.append(line)
            used += cost
        turns.reverse()

        return AssembledPrompt(
            text=preamble + "".join(turns) + tail,
            token_count=used,
            history_used=len(turns),
        )
