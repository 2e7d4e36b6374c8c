"""Flat vector index over a sqlite-vec virtual table.

Positions are 0-based and dense: the vector at position ``i`` is stored under
rowid ``i + 1``. Removing positions compacts the table so later vectors shift
down, keeping positions aligned with the caller's flat chunk list.
"""

from __future__ import annotations

import json
import re
import sqlite3
from collections.abc import Iterable, Sequence
from typing import Protocol


class VectorIndex(Protocol):
    """What the document index needs from a vector store."""

    @property
    def count(self) -> int: ...

    def insert(self, vectors: Sequence[Sequence[float]]) -> list[int]: ...

    def remove(self, indices: Iterable[int]) -> None: ...

    def search(
        self,
        vector: Sequence[float],
        top_k: int,
        min_relevance: float | None = None,
        starting_offset: int = 0,
    ) -> list[int]: ...


def relevance_from_distance(distance: float) -> float:
    """Cosine similarity of two unit vectors from their L2 distance."""
    return 1.0 - (distance * distance) / 2.0


class SqliteVecIndex:
    """VectorIndex backed by a vec0 table.

    The table is created on the first insert, with the dimensions of the first
    vector. Vectors are expected to be L2-normalised so that relevance is the
    cosine similarity.
    """

    def __init__(self, conn: sqlite3.Connection, table: str = "vec_chunks") -> None:
        if not re.fullmatch(r"[a-z0-9_]+", table):
            raise ValueError(f"Invalid table name '{table}'")
        self._conn = conn
        self._table = table
        self._dimensions: int | None = None

    @property
    def dimensions(self) -> int | None:
        return self._dimensions

    @property
    def count(self) -> int:
        if self._dimensions is None:
            return 0
        return self._conn.execute(f"SELECT COUNT(*) FROM {self._table}").fetchone()[0]

    def _ensure_table(self, dimensions: int) -> None:
        if self._dimensions is not None:
            if dimensions != self._dimensions:
                raise ValueError(
                    f"Vector has {dimensions} dimensions, index expects {self._dimensions}"
                )
            return
        if dimensions < 1:
            raise ValueError(f"dimensions must be >= 1, got {dimensions}")
        self._conn.execute(f"DROP TABLE IF EXISTS {self._table}")
        self._conn.execute(
            f"CREATE VIRTUAL TABLE {self._table} USING vec0(embedding float[{dimensions}])"
        )
        self._conn.commit()
        self._dimensions = dimensions

    def insert(self, vectors: Sequence[Sequence[float]]) -> list[int]:
        """Append *vectors*; return the positions they were stored at."""
        if not vectors:
            return []
        self._ensure_table(len(vectors[0]))
        for vector in vectors:
            if len(vector) != self._dimensions:
                raise ValueError(
                    f"Vector has {len(vector)} dimensions, index expects {self._dimensions}"
                )
        start = self.count
        self._conn.executemany(
            f"INSERT INTO {self._table}(rowid, embedding) VALUES (?, ?)",
            [(start + i + 1, json.dumps(list(v))) for i, v in enumerate(vectors)],
        )
        self._conn.commit()
        return list(range(start, start + len(vectors)))

    def remove(self, indices: Iterable[int]) -> None:
        """Delete the vectors at *indices* and shift later positions down."""
        removed = sorted({i + 1 for i in indices})
        if not removed or self._dimensions is None:
            return

        self._conn.executemany(
            f"DELETE FROM {self._table} WHERE rowid = ?", [(r,) for r in removed]
        )
        later = self._conn.execute(
            f"SELECT rowid, embedding FROM {self._table} WHERE rowid > ? ORDER BY rowid",
            (removed[0],),
        ).fetchall()
        self._conn.executemany(
            f"DELETE FROM {self._table} WHERE rowid = ?", [(row[0],) for row in later]
        )
        shifted = []
        for row in later:
            below = sum(1 for r in removed if r < row[0])
            shifted.append((row[0] - below, row[1]))
        self._conn.executemany(
            f"INSERT INTO {self._table}(rowid, embedding) VALUES (?, ?)", shifted
        )
        self._conn.commit()

    def search(
        self,
        vector: Sequence[float],
        top_k: int,
        min_relevance: float | None = None,
        starting_offset: int = 0,
    ) -> list[int]:
        """Return positions of the nearest vectors, best first.

        Args:
            vector: L2-normalised query vector.
            top_k: Maximum number of positions to return.
            min_relevance: Drop hits whose cosine similarity is below this.
            starting_offset: Skip this many best hits first (paging).
        """
        if top_k < 1 or self._dimensions is None:
            return []
        limit = top_k + max(0, starting_offset)
        rows = self._conn.execute(
            f"SELECT rowid, distance FROM {self._table} "
            "WHERE embedding MATCH ? ORDER BY distance LIMIT ?",
            (json.dumps(list(vector)), limit),
        ).fetchall()

        hits = [
            row[0] - 1
            for row in rows
            if min_relevance is None
            or relevance_from_distance(row[1]) >= min_relevance
        ]
        return hits[starting_offset:][:top_k]
