"""An in-process model of a split virtqueue and the guest memory behind it."""

from __future__ import annotations

import struct
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

VRING_DESC_F_NEXT = 1
"""The descriptor continues via its ``next`` field."""

VRING_DESC_F_WRITE = 2
"""The descriptor is write-only for the device."""

_U16_WRAP = 0x10000
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")


class GuestMemoryError(Exception):
    """An access fell outside guest memory."""


class GuestMemory:
    """A flat, zero-initialised guest address space starting at address 0."""

    def __init__(self, size: int) -> None:
        if size < 0:
            raise ValueError(f"memory size must not be negative, got {size}")
        self._data = bytearray(size)

    def __len__(self) -> int:
        return len(self._data)

    def _check(self, addr: int, length: int) -> None:
        if addr < 0 or length < 0 or addr + length > len(self._data):
            raise GuestMemoryError(
                f"invalid guest address 0x{addr:x} (length {length})"
            )

    def read(self, addr: int, length: int) -> bytes:
        """Return ``length`` bytes starting at ``addr``."""
        self._check(addr, length)
        return bytes(self._data[addr : addr + length])

    def write(self, addr: int, data: bytes) -> None:
        """Store ``data`` starting at ``addr``."""
        payload = bytes(data)
        self._check(addr, len(payload))
        self._data[addr : addr + len(payload)] = payload

    def read_u32(self, addr: int) -> int:
        return _U32.unpack(self.read(addr, _U32.size))[0]

    def read_u64(self, addr: int) -> int:
        return _U64.unpack(self.read(addr, _U64.size))[0]

    def write_u32(self, addr: int, value: int) -> None:
        self.write(addr, _U32.pack(value))

    def write_u64(self, addr: int, value: int) -> None:
        self.write(addr, _U64.pack(value))

    def checked_offset(self, addr: int, offset: int) -> int | None:
        """Return ``addr + offset`` if both ends lie in memory, else None."""
        target = addr + offset
        if 0 <= addr < len(self._data) and 0 <= target < len(self._data):
            return target
        return None


@dataclass(frozen=True)
class Descriptor:
    """One entry of a descriptor table."""

    addr: int
    length: int
    flags: int = 0
    next: int = 0

    def is_write_only(self) -> bool:
        return bool(self.flags & VRING_DESC_F_WRITE)

    def has_next(self) -> bool:
        return bool(self.flags & VRING_DESC_F_NEXT)


class DescriptorChain:
    """Iterates the descriptors of one chain, following ``next`` links.

    Iteration stops at a descriptor without the NEXT flag, at an index outside
    the table, or after as many steps as the table has entries.
    """

    def __init__(
        self, memory: GuestMemory, descriptors: Sequence[Descriptor], head_index: int
    ) -> None:
        self.memory = memory
        self.head_index = head_index
        self._table = tuple(descriptors)
        self._next_index: int | None = head_index
        self._ttl = len(self._table)

    def __iter__(self) -> DescriptorChain:
        return self

    def __next__(self) -> Descriptor:
        index = self._next_index
        if index is None or self._ttl == 0 or not 0 <= index < len(self._table):
            raise StopIteration
        desc = self._table[index]
        self._ttl -= 1
        self._next_index = desc.next if desc.has_next() else None
        return desc

    def __repr__(self) -> str:
        return f"DescriptorChain(head_index={self.head_index})"


class Virtqueue:
    """A split virtqueue: descriptor table, available ring and used ring."""

    def __init__(self, memory: GuestMemory, size: int) -> None:
        if size <= 0:
            raise ValueError(f"queue size must be positive, got {size}")
        self.memory = memory
        self.size = size
        self._table = [Descriptor(0, 0)] * size
        self._busy: set[int] = set()
        self._chains: dict[int, range] = {}
        self._available: deque[int] = deque()
        self._used: list[tuple[int, int]] = []
        self.next_used = 0
        self._signalled_used: int | None = None
        self.event_idx_enabled = False
        self.used_event = 0
        self.notifications_enabled = True
        self.signal_count = 0

    @property
    def used(self) -> list[tuple[int, int]]:
        """The ``(head_index, length)`` entries placed on the used ring."""
        return list(self._used)

    def add_chain(self, descriptors: Iterable[Descriptor]) -> int:
        """Place a chain in the table and make it available; return its head.

        The ``next`` field of each descriptor is relative to the chain's first
        descriptor.
        """
        descs = list(descriptors)
        if not descs:
            raise ValueError("a descriptor chain needs at least one descriptor")
        for start in range(self.size - len(descs) + 1):
            slots = range(start, start + len(descs))
            if self._busy.isdisjoint(slots):
                break
        else:
            raise ValueError("no room in the descriptor table")
        for slot, desc in zip(slots, descs):
            self._table[slot] = replace(desc, next=start + desc.next)
        self._busy.update(slots)
        self._chains[start] = slots
        self._available.append(start)
        return start

    def pop_descriptor_chain(self) -> DescriptorChain | None:
        """Take the next available chain, or None when none is waiting."""
        if not self._available:
            return None
        head = self._available.popleft()
        return DescriptorChain(self.memory, self._table, head)

    def add_used(self, head_index: int, length: int) -> None:
        """Return a chain to the driver through the used ring."""
        if not 0 <= head_index < self.size:
            raise ValueError(f"invalid descriptor index {head_index}")
        self._used.append((head_index, length))
        self.next_used = (self.next_used + 1) % _U16_WRAP
        slots = self._chains.pop(head_index, None)
        if slots is not None:
            self._busy.difference_update(slots)

    def enable_notification(self) -> bool:
        """Ask to be notified of new chains; return True if some are waiting."""
        self.notifications_enabled = True
        return bool(self._available)

    def needs_notification(self) -> bool:
        """Return True if the driver must be told about new used entries."""
        used_idx = self.next_used
        if self.event_idx_enabled:
            old = self._signalled_used
            self._signalled_used = used_idx
            if old is not None:
                return (used_idx - self.used_event - 1) % _U16_WRAP < (
                    used_idx - old
                ) % _U16_WRAP
        return True

    def signal_used_queue(self) -> None:
        """Notify the driver that the used ring changed."""
        self.signal_count += 1