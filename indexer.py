"""
Workspace markdown indexing.

``MEMORY.md`` and ``memory/*.md`` under a workspace directory are split into
overlapping chunks and stored under ``file:<path>:<n>`` keys so they can be
searched alongside conversational memories. Re-indexing replaces every
``file:`` entry.
"""

from __future__ import annotations

import json
import re
from collections.abc import Awaitable, Callable
from pathlib import Path

from errors import LanceKVError
from models import FileChunk
from store import LanceKVHandle

DEFAULT_CHUNK_TOKENS = 400
DEFAULT_CHUNK_OVERLAP = 80
CHARS_PER_TOKEN = 4  # rough estimate
FILE_KEY_PREFIX = "file:"

_HEADER = re.compile(r"^#{1,4}\s")


def chunk_markdown(
    text: str,
    path: str,
    tokens: int = DEFAULT_CHUNK_TOKENS,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[FileChunk]:
    """Split markdown into overlapping chunks with their source line ranges.

    A chunk closes once it reaches ``tokens`` (estimated from characters).
    The next chunk starts with the most recent header, if it would otherwise
    be lost, followed by trailing lines worth about ``overlap`` tokens.
    """
    max_chars = tokens * CHARS_PER_TOKEN
    overlap_chars = overlap * CHARS_PER_TOKEN
    lines = text.split("\n")

    chunks: list[FileChunk] = []
    chunk_lines: list[str] = []
    chunk_start = 1
    chunk_chars = 0
    last_header = ""

    for line_num, line in enumerate(lines, 1):
        if _HEADER.match(line):
            last_header = line

        chunk_lines.append(line)
        chunk_chars += len(line) + 1
        if chunk_chars < max_chars:
            continue

        chunk_text = "\n".join(chunk_lines).strip()
        if chunk_text:
            chunks.append(FileChunk(path, chunk_start, line_num, chunk_text))

        carried: list[str] = []
        carried_chars = 0
        for prev in reversed(chunk_lines):
            if carried_chars >= overlap_chars:
                break
            carried.insert(0, prev)
            carried_chars += len(prev) + 1
        if last_header and last_header not in carried:
            carried.insert(0, last_header)
            carried_chars += len(last_header) + 1

        chunk_lines = carried
        chunk_start = line_num - len(carried) + 1
        chunk_chars = carried_chars

    remaining = "\n".join(chunk_lines).strip()
    if remaining:
        chunks.append(FileChunk(path, chunk_start, len(lines), remaining))
    return chunks


def memory_files(workspace: Path) -> list[str]:
    """Relative paths of ``MEMORY.md`` and every ``memory/*.md`` file that exist."""
    found = ["MEMORY.md"] if (workspace / "MEMORY.md").is_file() else []
    memory_dir = workspace / "memory"
    if memory_dir.is_dir():
        found.extend(
            f"memory/{p.name}" for p in sorted(memory_dir.iterdir()) if p.is_file() and p.suffix == ".md"
        )
    return found


async def index_workspace(
    handle: LanceKVHandle,
    embed: Callable[[str], Awaitable[list[float]]],
    workspace: Path,
    agent_id: str,
) -> tuple[int, list[str]]:
    """Replace all ``file:`` entries with fresh chunks of the workspace files.

    Returns the number of chunks stored and one message per file that failed.
    """
    for key in await handle.list_keys(FILE_KEY_PREFIX):
        await handle.delete(key)

    indexed = 0
    errors: list[str] = []
    for rel_path in memory_files(workspace):
        try:
            content = (workspace / rel_path).read_text(encoding="utf-8")
            for i, chunk in enumerate(chunk_markdown(content, rel_path)):
                metadata = json.dumps(
                    {
                        "source": "file",
                        "path": chunk.path,
                        "start_line": chunk.start_line,
                        "end_line": chunk.end_line,
                        "chunk_index": i,
                    },
                    separators=(",", ":"),
                )
                await handle.store(
                    f"{FILE_KEY_PREFIX}{rel_path}:{i}",
                    agent_id,
                    chunk.text,
                    await embed(chunk.text),
                    metadata,
                )
                indexed += 1
        except (OSError, UnicodeDecodeError, LanceKVError) as e:
            errors.append(f"{rel_path}: {e}")

    return indexed, errors
