"""A file-backed block device with a bounded submission/completion ring."""

from __future__ import annotations

import enum
import errno
import logging
import os
from collections import deque
from dataclasses import dataclass
from pathlib import Path

from .aligned_buffer import AlignedBuf
from .block_device import SECTOR_SIZE, BlockDevice, IoChannel
from .errors import BlockIoError, InvalidParameterError

logger = logging.getLogger(__name__)

_MAX_RING_ENTRIES = 32768


class _Opcode(enum.Enum):
    READ = "read"
    WRITE = "write"
    FSYNC = "fsync"


@dataclass(frozen=True)
class _Submission:
    opcode: _Opcode
    request_id: int
    offset: int = 0
    length: int = 0
    buf: AlignedBuf | None = None


def _ring_capacity(queue_size: int) -> int:
    """Return the submission-ring size, rounded up to a power of two."""
    if not 1 <= queue_size <= _MAX_RING_ENTRIES:
        raise BlockIoError(
            OSError(errno.EINVAL, f"Invalid ring size: {queue_size}")
        )
    return 1 << (queue_size - 1).bit_length()


class UringIoChannel(IoChannel):
    """An I/O channel on one file with a bounded submission ring.

    Requests wait in the ring until :meth:`submit`; a request that does not
    fit is reported as failed by the next :meth:`poll`.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        queue_size: int,
        readonly: bool,
        direct_io: bool,
        sync_io: bool,
    ) -> None:
        flags = os.O_RDONLY if readonly else os.O_RDWR
        if direct_io:
            flags |= getattr(os, "O_DIRECT", 0)
        if sync_io:
            flags |= os.O_SYNC
        try:
            self._fd = os.open(path, flags)
        except OSError as exc:
            logger.error("Failed to open file %s: %s", path, exc)
            raise BlockIoError(exc) from exc
        try:
            self._capacity = _ring_capacity(queue_size)
        except BlockIoError:
            logger.error("Failed to create ring of size %s", queue_size)
            os.close(self._fd)
            self._fd = -1
            raise
        self._sync_io = sync_io
        self._queued: list[_Submission] = []
        self._completed: deque[tuple[int, int]] = deque()
        self._finished: list[tuple[int, bool]] = []
        self._submissions = 0
        self._completions = 0

    def __enter__(self) -> UringIoChannel:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying file; further submissions fail."""
        if self._fd >= 0:
            os.close(self._fd)
            self._fd = -1

    def _push(self, entry: _Submission) -> None:
        if len(self._queued) >= self._capacity:
            self._finished.append((entry.request_id, False))
            return
        self._queued.append(entry)

    def add_read(
        self, sector_offset: int, sector_count: int, buf: AlignedBuf, request_id: int
    ) -> None:
        self._push(
            _Submission(
                _Opcode.READ,
                request_id,
                sector_offset * SECTOR_SIZE,
                sector_count * SECTOR_SIZE,
                buf,
            )
        )

    def add_write(
        self, sector_offset: int, sector_count: int, buf: AlignedBuf, request_id: int
    ) -> None:
        self._push(
            _Submission(
                _Opcode.WRITE,
                request_id,
                sector_offset * SECTOR_SIZE,
                sector_count * SECTOR_SIZE,
                buf,
            )
        )

    def add_flush(self, request_id: int) -> None:
        if self._sync_io:
            self._finished.append((request_id, True))
            return
        self._push(_Submission(_Opcode.FSYNC, request_id))

    def _execute(self, entry: _Submission) -> int:
        """Run one request, returning a byte count or a negated errno."""
        try:
            if entry.opcode is _Opcode.FSYNC:
                os.fsync(self._fd)
                return 0
            assert entry.buf is not None
            view = entry.buf.view()[: entry.length]
            if len(view) < entry.length:
                return -errno.EFAULT
            if entry.opcode is _Opcode.READ:
                return os.preadv(self._fd, [view], entry.offset)
            return os.pwrite(self._fd, view, entry.offset)
        except OSError as exc:
            return -(exc.errno or errno.EIO)

    def submit(self) -> None:
        if not self._queued:
            return
        if self._fd < 0:
            error = OSError(errno.EBADF, "I/O channel is closed")
            logger.error("Failed to submit IO request: %s", error)
            raise BlockIoError(error)
        queued, self._queued = self._queued, []
        self._submissions += len(queued)
        for entry in queued:
            self._completed.append((entry.request_id, self._execute(entry)))

    def poll(self) -> list[tuple[int, bool]]:
        finished, self._finished = self._finished, []
        while self._completed:
            request_id, result = self._completed.popleft()
            if result < 0:
                logger.error("IO request failed: %s", os.strerror(-result))
            finished.append((request_id, result >= 0))
            self._completions += 1
        return finished

    def busy(self) -> bool:
        return (
            self._submissions > self._completions
            or bool(self._finished)
            or bool(self._queued)
        )


class UringBlockDevice(BlockDevice):
    """A block device backed by a regular file whose size is whole sectors."""

    def __init__(
        self,
        path: str | os.PathLike[str],
        queue_size: int,
        readonly: bool,
        direct_io: bool,
        sync: bool,
    ) -> None:
        if queue_size <= 0 or queue_size & (queue_size - 1):
            logger.error("Invalid queue size: %s", queue_size)
            raise InvalidParameterError("queue_size must be a positive power of two")
        self.path = Path(path)
        try:
            size = self.path.stat().st_size
        except OSError as exc:
            logger.error("Failed to get metadata for %s: %s", self.path, exc)
            raise BlockIoError(exc) from exc
        if size % SECTOR_SIZE:
            logger.error("File %s size is not a multiple of sector size", self.path)
            raise InvalidParameterError("File size is not a multiple of sector size")
        self._sector_count = size // SECTOR_SIZE
        self.queue_size = queue_size
        self.readonly = readonly
        self.direct_io = direct_io
        self.sync = sync

    def create_channel(self) -> UringIoChannel:
        return UringIoChannel(
            self.path, self.queue_size, self.readonly, self.direct_io, self.sync
        )

    def sector_count(self) -> int:
        return self._sector_count