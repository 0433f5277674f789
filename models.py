"""Shared data models for lancedb-kv."""

from dataclasses import dataclass
from functools import lru_cache

import pyarrow as pa
from lancedb.pydantic import LanceModel, Vector

DEFAULT_TABLE = "memories"


@lru_cache(maxsize=None)
def memory_model(embedding_dim: int) -> type[LanceModel]:
    """Build the record schema for a given embedding width.

    IMPORTANT: Any changes to this schema require migration of existing data.
    Field order is the on-disk column order.
    """

    class Memory(LanceModel):
        key: str
        agent_id: str  # tenant tag, not part of uniqueness
        text: str
        embedding: Vector(embedding_dim, nullable=False)  # type: ignore[valid-type]
        metadata: str | None = None  # opaque payload, usually JSON
        created_at: int  # ms since epoch, set by the store

    return Memory


@lru_cache(maxsize=None)
def memory_schema(embedding_dim: int) -> pa.Schema:
    """Arrow schema of the managed table."""
    return memory_model(embedding_dim).to_arrow_schema()


@dataclass(frozen=True, slots=True)
class SearchResult:
    key: str
    text: str
    score: float
    metadata: str | None = None


MEMORY_CATEGORIES = ("preference", "fact", "decision", "entity", "other")


@dataclass(frozen=True, slots=True)
class FileChunk:
    """A slice of a workspace markdown file, with 1-indexed inclusive line range."""

    path: str
    start_line: int
    end_line: int
    text: str
