"""A fixed-size pool of aligned buffers."""

from __future__ import annotations

from collections import deque

from .aligned_buffer import AlignedBuf


class AlignedBufferPool:
    """Hands out pre-allocated aligned buffers by index."""

    def __init__(self, alignment: int, count: int, size: int) -> None:
        self._buffers = [AlignedBuf(size, alignment) for _ in range(count)]
        self._available: deque[int] = deque(range(count))

    def get_buffer(self) -> tuple[AlignedBuf, int] | None:
        """Take a free buffer and its index, or None when the pool is empty."""
        if not self._available:
            return None
        index = self._available.popleft()
        return self._buffers[index], index

    def return_buffer(self, index: int) -> None:
        """Give the buffer at ``index`` back to the pool."""
        if not 0 <= index < len(self._buffers):
            raise IndexError(
                f"Invalid buffer index {index} returned to pool "
                f"(max: {len(self._buffers) - 1})"
            )
        self._available.append(index)

    def has_available(self) -> bool:
        return bool(self._available)