"""A bounded FIFO queue of chunks."""

from collections import deque
from typing import Deque, Optional

from .chunk import Chunk


class ChunkQueue:
    """FIFO of chunks; a max_size of 0 means unlimited."""

    def __init__(self, max_size: int = 0) -> None:
        self._chunks: Deque[Chunk] = deque()
        self._max_size = max_size

    def push(self, chunk: Chunk) -> bool:
        """Append a chunk; return False if it was dropped because the queue is full."""
        if self._max_size > 0 and len(self._chunks) >= self._max_size:
            return False
        self._chunks.append(chunk)
        return True

    def pop(self) -> Optional[Chunk]:
        """Remove and return the oldest chunk, or None if empty."""
        return self._chunks.popleft() if self._chunks else None

    def peek(self) -> Optional[Chunk]:
        """Return a copy of the oldest chunk without removing it, or None."""
        return self._chunks[0].clone() if self._chunks else None

    def __len__(self) -> int:
        return len(self._chunks)