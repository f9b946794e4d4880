"""Temporary per-chunk blob storage for in-flight transfers."""

from .chunk_store import ChunkStore, ChunkStoreError

__all__ = [
    "ChunkStore",
    "ChunkStoreError",
]
