"""
Text embeddings for the memory tools.

Providers:
- openai: text-embedding-3-small over the OpenAI HTTP API
- ollama: a local Ollama server
- hash: deterministic random projection of the text's tokens, fully offline

Remote providers fall back to the hash projection when they fail, so a
memory can always be saved. Hash vectors only match on shared tokens.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field
from functools import lru_cache

import numpy as np
import requests

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"

_MASK = np.uint64(0xFFFFFFFF)
_MIX = np.uint64(0x45D9F3B)
_SHIFT = np.uint64(16)


@dataclass(frozen=True, slots=True)
class Embedder:
    """Embedding provider settings. Hashable, so results can be cached per embedder."""

    dim: int
    provider: str = "hash"  # hash | openai | ollama
    model: str = "text-embedding-3-small"
    openai_api_key: str | None = field(default=None, repr=False)
    ollama_base_url: str = "http://localhost:11434"
    timeout: float = 15.0

    async def embed(self, text: str) -> list[float]:
        """Embed ``text`` off the event loop; cached per (embedder, text)."""
        return list(await asyncio.to_thread(_embed_cached, self, text))


# =============================================================================
# Local hash projection
# =============================================================================


def _fnv1a(token: str) -> int:
    h = 0x811C9DC5
    for ch in token:
        h ^= ord(ch)
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def local_hash_embedding(text: str, dim: int) -> list[float]:
    """
    Deterministic random projection: each lowercased whitespace token seeds a
    pseudo-random vector in [-1, 1]^dim, the token vectors are summed and the
    sum is L2-normalised. Empty text gives the zero vector.
    """
    lanes = (np.arange(dim, dtype=np.uint64) * np.uint64(2654435761)) & _MASK
    vec = np.zeros(dim, dtype=np.float64)
    for token in text.lower().split():
        h = np.uint64(_fnv1a(token)) ^ lanes
        h = (((h >> _SHIFT) ^ h) * _MIX) & _MASK
        h = (((h >> _SHIFT) ^ h) * _MIX) & _MASK
        h = (h >> _SHIFT) ^ h
        vec += h.astype(np.float64) / 0xFFFFFFFF * 2 - 1
    return _normalize(vec)


def _normalize(embedding: np.ndarray) -> list[float]:
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


def _fit_dimension(embedding: np.ndarray, dim: int) -> np.ndarray:
    """Truncate or zero-pad a provider vector to ``dim``."""
    if len(embedding) > dim:
        return embedding[:dim]
    if len(embedding) < dim:
        return np.concatenate([embedding, np.zeros(dim - len(embedding))])
    return embedding


# =============================================================================
# Remote providers
# =============================================================================


def _embed_openai(embedder: Embedder, text: str) -> list[float] | None:
    if not embedder.openai_api_key:
        print("[lancedb-kv] OPENAI_API_KEY is not set", file=sys.stderr)
        return None
    try:
        response = requests.post(
            OPENAI_EMBEDDINGS_URL,
            headers={"Authorization": f"Bearer {embedder.openai_api_key}"},
            json={"model": embedder.model, "input": text},
            timeout=embedder.timeout,
        )
        data = response.json()
        if data.get("error"):
            error = data["error"]
            raise ValueError(error.get("message", error) if isinstance(error, dict) else error)
        response.raise_for_status()
        embedding = np.asarray(data["data"][0]["embedding"], dtype=np.float64)
        return _normalize(_fit_dimension(embedding, embedder.dim))
    except Exception as e:
        print(f"[lancedb-kv] OpenAI embedding error: {e}", file=sys.stderr)
        return None


def _embed_ollama(embedder: Embedder, text: str) -> list[float] | None:
    try:
        response = requests.post(
            f"{embedder.ollama_base_url}/api/embeddings",
            json={"model": embedder.model, "prompt": text},
            timeout=embedder.timeout,
        )
        response.raise_for_status()
        embedding = np.asarray(response.json().get("embedding", []), dtype=np.float64)
        return _normalize(_fit_dimension(embedding, embedder.dim))
    except Exception as e:
        print(f"[lancedb-kv] Ollama embedding error: {e}", file=sys.stderr)
        return None


_REMOTE = {"openai": _embed_openai, "ollama": _embed_ollama}


def _embed_sync(embedder: Embedder, text: str) -> list[float]:
    """Embed with the configured provider, falling back to the hash projection."""
    provider = embedder.provider.lower()
    if provider in _REMOTE:
        result = _REMOTE[provider](embedder, text)
        if result is not None:
            return result
        print(f"[lancedb-kv] {provider} failed, using hash fallback embedding", file=sys.stderr)
    elif provider != "hash":
        print(f"[lancedb-kv] Unknown embedding provider '{embedder.provider}', using hash", file=sys.stderr)
    return local_hash_embedding(text, embedder.dim)


@lru_cache(maxsize=128)
def _embed_cached(embedder: Embedder, text: str) -> tuple[float, ...]:
    """Cached embedding computation to avoid redundant API calls."""
    return tuple(_embed_sync(embedder, text))
