"""Byte buffers whose start address is aligned, as needed for direct I/O."""

from __future__ import annotations

import numpy as np

BUFFER_ALIGNMENT = 4096
"""Default alignment for buffers used with O_DIRECT."""


def _is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


class AlignedBuf:
    """A zero-initialised byte buffer whose first byte sits on an aligned address."""

    def __init__(self, length: int, alignment: int = BUFFER_ALIGNMENT) -> None:
        if not _is_power_of_two(alignment):
            raise ValueError(
                f"Alignment must be non-zero and a power of two, got: {alignment}"
            )
        if length < 0:
            raise ValueError(f"Buffer length must not be negative, got: {length}")
        self._alignment = alignment
        self._length = length
        raw = np.zeros(length + alignment, dtype=np.uint8)
        start = raw.ctypes.data
        offset = (alignment - start % alignment) % alignment
        self._raw = raw
        self._data = raw[offset : offset + length]

    @property
    def alignment(self) -> int:
        return self._alignment

    def __len__(self) -> int:
        return self._length

    def view(self) -> memoryview:
        """Return a writable view of the aligned bytes."""
        return memoryview(self._data)

    def address(self) -> int:
        """Return the memory address of the first aligned byte."""
        return int(self._data.ctypes.data)

    def copy(self) -> AlignedBuf:
        """Return a new buffer with the same length, alignment and contents."""
        new = AlignedBuf(self._length, self._alignment)
        new._data[:] = self._data
        return new

    def __bytes__(self) -> bytes:
        return self._data.tobytes()

    def __repr__(self) -> str:
        return f"AlignedBuf(length={self._length}, alignment={self._alignment})"