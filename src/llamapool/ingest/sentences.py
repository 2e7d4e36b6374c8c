"""Sentence chunker: packs whole sentences into chunks of bounded length."""

from __future__ import annotations

import re

from llamapool.ingest.base import BaseChunker, Chunk

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+")


def split_sentences(text: str) -> list[str]:
    """Return the sentences of *text*.

    A trailing fragment without a terminator counts as a sentence.
    """
    sentences: list[str] = []
    end = 0
    for match in _SENTENCE_RE.finditer(text):
        sentence = match.group().strip()
        if sentence:
            sentences.append(sentence)
        end = match.end()
    tail = text[end:].strip()
    if tail:
        sentences.append(tail)
    return sentences


class SentenceChunker(BaseChunker):
    """Group consecutive sentences into chunks of at most ``max_length`` chars.

    A sentence longer than ``max_length`` is cut on a fixed stride instead.
    """

    def chunk(self, document: str, content: str) -> list[Chunk]:
        if not content.strip():
            return []

        texts: list[str] = []
        current = ""
        for sentence in split_sentences(content):
            if len(sentence) > self.max_length:
                if current:
                    texts.append(current)
                    current = ""
                texts.extend(self._split_fixed_window(sentence))
                continue
            candidate = f"{current} {sentence}" if current else sentence
            if len(candidate) > self.max_length:
                texts.append(current)
                current = sentence
            else:
                current = candidate
        if current:
            texts.append(current)

        return self._make_chunks(document, texts)
