"""Vector storage for retrieval."""

from llamapool.db.connection import Database
from llamapool.db.vectors import SqliteVecIndex, VectorIndex, relevance_from_distance

__all__ = [
    "Database",
    "SqliteVecIndex",
    "VectorIndex",
    "relevance_from_distance",
]
