from typing import List, Sequence, TypeVar

from curator.domain.entities import LIBRARY_BATCH_SIZE, PLAYLIST_BATCH_SIZE


T = TypeVar("T")

__all__ = ["chunked", "PLAYLIST_BATCH_SIZE", "LIBRARY_BATCH_SIZE"]


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    """Split ``items`` into consecutive chunks of at most ``size``, preserving order."""
    if size <= 0:
        raise ValueError("Chunk size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]
