"""Abstract block devices and the asynchronous I/O channels they hand out."""

from __future__ import annotations

from abc import ABC, abstractmethod

from .aligned_buffer import AlignedBuf

SECTOR_SIZE = 512
"""Size in bytes of one sector as seen by the guest."""


class IoChannel(ABC):
    """A queue of block requests, completed asynchronously.

    Requests are queued with the ``add_*`` methods, sent with :meth:`submit`
    and collected with :meth:`poll` as ``(request_id, success)`` pairs.
    """

    @abstractmethod
    def add_read(
        self, sector_offset: int, sector_count: int, buf: AlignedBuf, request_id: int
    ) -> None:
        """Queue a read of ``sector_count`` sectors into ``buf``."""

    @abstractmethod
    def add_write(
        self, sector_offset: int, sector_count: int, buf: AlignedBuf, request_id: int
    ) -> None:
        """Queue a write of ``sector_count`` sectors from ``buf``."""

    @abstractmethod
    def add_flush(self, request_id: int) -> None:
        """Queue a flush of written data to stable storage."""

    @abstractmethod
    def submit(self) -> None:
        """Send queued requests; raise a VhostUserBlockError on failure."""

    @abstractmethod
    def poll(self) -> list[tuple[int, bool]]:
        """Return the requests that finished since the last poll."""

    @abstractmethod
    def busy(self) -> bool:
        """Return True while requests are queued, in flight or unreported."""


class BlockDevice(ABC):
    """A device made of fixed-size sectors that can open I/O channels."""

    @abstractmethod
    def create_channel(self) -> IoChannel:
        """Open a new, independent I/O channel to the device."""

    @abstractmethod
    def sector_count(self) -> int:
        """Return the device size in sectors."""