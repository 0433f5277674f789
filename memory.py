"""
Natural-language memory on top of a ``LanceKVHandle``.

The handle stores and searches vectors; ``MemoryManager`` embeds text for it
and adds the agent-facing behaviour:
- remember: injection screening, duplicate check, category detection
- recall / forget by query
- context: auto-recall block for prepending to a prompt
- capture: auto-store of memorable user messages
- workspace markdown indexing, file search and file reads
- the pre-compaction flush prompt
"""

from __future__ import annotations

import asyncio
import json
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from embeddings import Embedder
from indexer import index_workspace
from models import MEMORY_CATEGORIES, SearchResult
from security import (
    DEFAULT_CAPTURE_MAX_CHARS,
    detect_category,
    format_relevant_memories_context,
    looks_like_prompt_injection,
    should_capture,
)
from store import LanceKVHandle
from utils import now_ms

FORGET_MIN_SCORE = 0.7
FORGET_DELETE_SCORE = 0.9
FILE_FILTER = """metadata LIKE '%"source":"file"%'"""


@dataclass(frozen=True, slots=True)
class MemorySettings:
    agent_id: str = "main"
    recall_limit: int = 3  # auto-recall only; the recall tool takes its own limit
    recall_min_score: float = 0.3
    recall_timeout: float = 2.0  # seconds allowed for embedding an auto-recall prompt
    capture_max_chars: int = DEFAULT_CAPTURE_MAX_CHARS
    dup_threshold: float = 0.95
    auto_recall: bool = True
    auto_capture: bool = True
    workspace: Path = field(default_factory=Path.cwd)


def _metadata(result: SearchResult) -> dict[str, Any]:
    """Parsed metadata; anything that is not a JSON object reads as empty."""
    if not result.metadata:
        return {}
    try:
        meta = json.loads(result.metadata)
    except ValueError:
        return {}
    return meta if isinstance(meta, dict) else {}


def _category(result: SearchResult) -> str:
    return _metadata(result).get("category") or "other"


def _new_key(prefix: str) -> str:
    return f"{prefix}-{now_ms()}-{uuid.uuid4().hex[:6]}"


def flush_prompt() -> str:
    """Prompt asking the agent to persist durable memories before compaction."""
    date_stamp = datetime.now(timezone.utc).date().isoformat()
    return " ".join(
        [
            "Pre-compaction memory flush.",
            f"Store durable memories now (use memory/{date_stamp}.md; create memory/ if needed).",
            "IMPORTANT: If the file already exists, APPEND new content only and do not overwrite existing entries.",
            "If nothing to store, reply with [NO_REPLY].",
        ]
    )


class MemoryManager:
    """Embeds text for a store handle. Store errors propagate as ``LanceKVError``;
    invalid arguments raise ``ValueError``."""

    def __init__(
        self,
        handle: LanceKVHandle,
        embedder: Embedder,
        settings: MemorySettings | None = None,
    ):
        self.handle = handle
        self.embedder = embedder
        self.settings = settings or MemorySettings()

    async def embed(self, text: str) -> list[float]:
        return await self.embedder.embed(text)

    async def _duplicate_of(self, vector: list[float]) -> SearchResult | None:
        results = await self.handle.search(vector, 1)
        if results and results[0].score >= self.settings.dup_threshold:
            return results[0]
        return None

    async def _store_new(self, prefix: str, text: str, vector: list[float], metadata: dict) -> str:
        key = _new_key(prefix)
        await self.handle.store(key, self.settings.agent_id, text, vector, json.dumps(metadata))
        return key

    # -------------------------------------------------------------------------
    # Agent tools
    # -------------------------------------------------------------------------

    async def remember(self, text: str, category: str | None = None) -> dict:
        """Store ``text`` unless it looks like an injection or duplicates a memory."""
        if not text.strip():
            raise ValueError("text is required")
        if category is not None:
            category = category.strip().lower()
            if category not in MEMORY_CATEGORIES:
                raise ValueError(
                    f"Invalid category '{category}'. Use one of: {', '.join(MEMORY_CATEGORIES)}"
                )
        if looks_like_prompt_injection(text):
            raise ValueError("Content rejected: suspected prompt injection")

        vector = await self.embed(text)
        existing = await self._duplicate_of(vector)
        if existing is not None:
            return {"action": "duplicate", "key": existing.key, "existing": existing.text}

        category = category or detect_category(text)
        key = await self._store_new("mem", text, vector, {"category": category, "importance": 0.7})
        return {"action": "stored", "key": key, "category": category}

    async def recall(self, query: str, limit: int = 5) -> dict:
        """Memories similar to ``query`` scoring at least ``recall_min_score``."""
        results = await self.handle.search(await self.embed(query), limit)
        relevant = [r for r in results if r.score >= self.settings.recall_min_score]
        if not relevant:
            return {"count": 0, "message": "No relevant memories found."}

        memories = "\n".join(
            f"{i}. [{_category(r)}] {r.text} ({r.score * 100:.0f}%)"
            for i, r in enumerate(relevant, 1)
        )
        return {"count": len(relevant), "memories": memories}

    async def forget(self, key: str | None = None, query: str | None = None) -> dict:
        """Delete by key, or by query when exactly one close match exists."""
        if key:
            await self.handle.delete(key)
            return {"action": "deleted", "key": key}
        if not query:
            raise ValueError("Provide query or key.")

        results = await self.handle.search(await self.embed(query), 5)
        matches = [r for r in results if r.score >= FORGET_MIN_SCORE]
        if not matches:
            return {"action": "none", "message": "No matching memories found."}

        if len(matches) == 1 and matches[0].score > FORGET_DELETE_SCORE:
            await self.handle.delete(matches[0].key)
            return {"action": "deleted", "key": matches[0].key, "text": matches[0].text}

        return {
            "action": "candidates",
            "candidates": [{"key": r.key, "text": r.text, "score": r.score} for r in matches],
            "message": "Multiple matches found. Specify a key to delete.",
        }

    # -------------------------------------------------------------------------
    # Per-turn hooks
    # -------------------------------------------------------------------------

    async def context(self, prompt: str) -> str | None:
        """``<relevant-memories>`` block for ``prompt``, or None if nothing relevant."""
        if not self.settings.auto_recall or len(prompt) < 5:
            return None
        try:
            vector = await asyncio.wait_for(self.embed(prompt), self.settings.recall_timeout)
        except asyncio.TimeoutError:
            print("[lancedb-kv] Auto-recall embedding timed out", file=sys.stderr)
            return None

        results = await self.handle.search(vector, self.settings.recall_limit)
        relevant = [r for r in results if r.score >= self.settings.recall_min_score]
        if not relevant:
            return None
        return format_relevant_memories_context([(_category(r), r.text) for r in relevant])

    async def capture(self, text: str) -> bool:
        """Store a user message if it looks memorable and is not a duplicate."""
        if not self.settings.auto_capture:
            return False
        if not should_capture(text, self.settings.capture_max_chars):
            return False

        vector = await self.embed(text)
        if await self._duplicate_of(vector) is not None:
            return False
        metadata = {"category": detect_category(text), "importance": 0.7, "auto": True}
        await self._store_new("auto", text, vector, metadata)
        return True

    # -------------------------------------------------------------------------
    # Workspace files
    # -------------------------------------------------------------------------

    async def index_files(self) -> dict:
        indexed, errors = await index_workspace(
            self.handle, self.embed, self.settings.workspace, self.settings.agent_id
        )
        return {"indexed": indexed, "errors": errors}

    async def search_files(self, query: str, max_results: int = 5) -> dict:
        """Semantic search restricted to indexed workspace file chunks."""
        results = await self.handle.search(await self.embed(query), max_results, FILE_FILTER)
        formatted = []
        for r in results:
            meta = _metadata(r)
            path = meta.get("path", "")
            start, end = meta.get("start_line", 0), meta.get("end_line", 0)
            formatted.append(
                {
                    "path": path or "unknown",
                    "start_line": start,
                    "end_line": end,
                    "snippet": r.text,
                    "score": r.score,
                    "citation": f"{path}#L{start}-L{end}",
                }
            )
        return {"results": formatted, "count": len(formatted)}

    def get_file(self, path: str, from_line: int = 1, lines: int | None = None) -> dict:
        """Read ``MEMORY.md`` or a ``memory/*.md`` file, optionally a line range.

        Missing files read as empty text.
        """
        normalized = path.replace("\\", "/")
        if normalized != "MEMORY.md" and not normalized.startswith("memory/"):
            raise ValueError("path must be MEMORY.md or memory/*.md")
        if ".." in normalized or "//" in normalized:
            raise ValueError("Invalid path")

        try:
            content = (self.settings.workspace / normalized).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return {"path": path, "text": ""}

        all_lines = content.split("\n")
        start = max(0, from_line - 1)
        count = len(all_lines) if lines is None else lines
        return {"path": path, "text": "\n".join(all_lines[start : from_line - 1 + count])}
