"""Per-queue worker that turns virtio-blk requests into block I/O."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import IO

from .aligned_buffer import AlignedBuf
from .block import (
    VIRTIO_BLK_ID_BYTES,
    VIRTIO_BLK_S_IOERR,
    VIRTIO_BLK_S_OK,
    VIRTIO_BLK_S_UNSUPP,
)
from .block_device import SECTOR_SIZE, IoChannel
from .debug import encode_hex
from .errors import (
    BlockIoError,
    ChannelError,
    GuestMemoryAccessError,
    VhostUserBlockError,
)
from .options import Options
from .request import Request, RequestError, RequestType
from .virtqueue import DescriptorChain, GuestMemory, GuestMemoryError, Virtqueue

logger = logging.getLogger(__name__)


@dataclass
class RequestSlot:
    """Book-keeping for one in-flight request and its data buffer."""

    buffer: AlignedBuf
    length: int
    used: bool = False
    request_type: RequestType = RequestType.NONE
    request_sector: int = 0
    request_len: int = 0
    status_addr: int = 0
    desc_chain: DescriptorChain | None = None
    data_descriptors: list[tuple[int, int]] = field(default_factory=list)


class UbiBlkBackendThread:
    """Serves one virtqueue: parses requests, issues I/O and completes them."""

    def __init__(
        self,
        memory: GuestMemory,
        io_channel: IoChannel,
        options: Options,
        alignment: int,
    ) -> None:
        buf_size = options.seg_count_max * options.seg_size_max
        self._slots = [
            RequestSlot(buffer=AlignedBuf(buf_size, alignment), length=buf_size)
            for _ in range(options.queue_size)
        ]
        self.event_idx = False
        self.kill_evt = threading.Event()
        self.memory = memory
        self._io_channel = io_channel
        self._io_debug_file: IO[str] | None = None
        if options.io_debug_path is not None:
            try:
                self._io_debug_file = open(
                    options.io_debug_path, "w", encoding="ascii"
                )
            except OSError as exc:
                logger.error("failed to open io debug file: %r", exc)
                raise BlockIoError(exc) from exc
        self._skip_sync = options.skip_sync
        self._device_id = options.device_id
        self._alignment = alignment
        self._pinned = False
        self._ios_pending_signal = False

    def __enter__(self) -> UbiBlkBackendThread:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the debug log file, if one is open."""
        if self._io_debug_file is not None:
            self._io_debug_file.close()
            self._io_debug_file = None

    @property
    def request_slots(self) -> tuple[RequestSlot, ...]:
        return tuple(self._slots)

    def get_request_slot(
        self, length: int, request: Request, desc_chain: DescriptorChain
    ) -> int:
        """Claim a free slot whose buffer holds ``length`` bytes; return its index."""
        for index, slot in enumerate(self._slots):
            if slot.length >= length and not slot.used:
                break
        else:
            slot = RequestSlot(
                buffer=AlignedBuf(length, self._alignment), length=length
            )
            self._slots.append(slot)
            index = len(self._slots) - 1
        slot.used = True
        slot.request_type = request.request_type
        slot.status_addr = request.status_addr
        slot.desc_chain = desc_chain
        slot.data_descriptors = list(request.data_descriptors)
        slot.request_sector = request.sector
        slot.request_len = length
        return index

    def put_request_slot(self, index: int) -> None:
        self._slots[index].used = False

    def pin_to_cpu(self, cpu: int) -> None:
        """Bind the calling thread to ``cpu``; only the first call has effect."""
        if self._pinned:
            return
        self._pinned = True
        setaffinity = getattr(os, "sched_setaffinity", None)
        if setaffinity is None:
            logger.error("failed to pin thread to cpu %s: not supported", cpu)
            return
        try:
            setaffinity(0, {cpu})
        except OSError as exc:
            logger.error("failed to pin thread to cpu %s: %r", cpu, exc)
        else:
            logger.info(
                "pinned thread %s to cpu %s", threading.current_thread().name, cpu
            )

    def request_len(self, request: Request) -> int:
        return sum(length for _, length in request.data_descriptors)

    def _complete_bad_chain(self, vring: Virtqueue, desc_chain: DescriptorChain) -> None:
        try:
            vring.add_used(desc_chain.head_index, 0)
        except ValueError as exc:
            logger.error("failed to add used descriptor: %r", exc)

    def _complete_io(
        self,
        vring: Virtqueue,
        desc_chain: DescriptorChain,
        status_addr: int,
        status: int,
    ) -> None:
        self._ios_pending_signal = True
        try:
            desc_chain.memory.write(status_addr, bytes([status]))
        except GuestMemoryError as exc:
            logger.error("failed to write status: %r", exc)
            return
        try:
            vring.add_used(desc_chain.head_index, 0)
        except ValueError as exc:
            logger.error("failed to add used descriptor: %r", exc)

    def _write_to_guest(self, slot: RequestSlot) -> None:
        if slot.desc_chain is None:
            raise ChannelError()
        memory = slot.desc_chain.memory
        view = slot.buffer.view()
        pos = 0
        for addr, length in slot.data_descriptors:
            try:
                memory.write(addr, view[pos : pos + length])
            except GuestMemoryError as exc:
                logger.error("writing to guest memory failed: %r", exc)
                raise GuestMemoryAccessError(exc) from exc
            pos += length

    def _log_io(self, kind: str, sector: int, length: int, buffer: AlignedBuf) -> None:
        if self._io_debug_file is None:
            return
        try:
            self._io_debug_file.write(
                f"{kind}\n{sector}\n{length}\n{encode_hex(buffer.view(), length)}\n"
            )
            self._io_debug_file.flush()
        except OSError as exc:
            logger.error("failed to write to io debug file: %r", exc)

    def _poll_io(self, vring: Virtqueue) -> None:
        finished_reads = []
        for request_id, success in self._io_channel.poll():
            slot = self._slots[request_id]
            desc_chain = slot.desc_chain
            if desc_chain is None:
                logger.error("Request slot %s missing desc_chain", request_id)
                continue
            write_failed = False
            if slot.request_type is RequestType.IN and success:
                try:
                    self._write_to_guest(slot)
                except VhostUserBlockError:
                    write_failed = True
                finished_reads.append(request_id)
            status = VIRTIO_BLK_S_OK if success and not write_failed else VIRTIO_BLK_S_IOERR
            self._complete_io(vring, desc_chain, slot.status_addr, status)
            self.put_request_slot(request_id)

        for request_id in finished_reads:
            slot = self._slots[request_id]
            self._log_io("READ", slot.request_sector, slot.request_len, slot.buffer)

    def _process_read(
        self, request: Request, desc_chain: DescriptorChain, vring: Virtqueue
    ) -> None:
        length = self.request_len(request)
        if length % SECTOR_SIZE:
            logger.error(
                "read request length is not a multiple of sector size: %s", length
            )
            self._complete_io(vring, desc_chain, request.status_addr, VIRTIO_BLK_S_IOERR)
            return
        index = self.get_request_slot(length, request, desc_chain)
        self._io_channel.add_read(
            request.sector, length // SECTOR_SIZE, self._slots[index].buffer, index
        )

    def _process_write(
        self, request: Request, desc_chain: DescriptorChain, vring: Virtqueue
    ) -> None:
        length = self.request_len(request)
        if length % SECTOR_SIZE:
            logger.error(
                "write request length is not a multiple of sector size: %s", length
            )
            self._complete_io(vring, desc_chain, request.status_addr, VIRTIO_BLK_S_IOERR)
            return

        index = self.get_request_slot(length, request, desc_chain)
        buffer = self._slots[index].buffer
        view = buffer.view()
        pos = 0
        read_failed = False
        for addr, data_len in request.data_descriptors:
            try:
                view[pos : pos + data_len] = desc_chain.memory.read(addr, data_len)
            except GuestMemoryError as exc:
                logger.error("reading from guest memory failed: %r", exc)
                read_failed = True
            pos += data_len

        if read_failed:
            self._complete_io(vring, desc_chain, request.status_addr, VIRTIO_BLK_S_IOERR)
            self.put_request_slot(index)
            return

        self._log_io("WRITE", request.sector, length, buffer)
        self._io_channel.add_write(request.sector, length // SECTOR_SIZE, buffer, index)

    def _process_flush(
        self, request: Request, desc_chain: DescriptorChain, vring: Virtqueue
    ) -> None:
        if self._skip_sync:
            self._complete_io(vring, desc_chain, request.status_addr, VIRTIO_BLK_S_OK)
            return
        index = self.get_request_slot(0, request, desc_chain)
        self._io_channel.add_flush(index)

    def _process_get_device_id(
        self, request: Request, desc_chain: DescriptorChain, vring: Virtqueue
    ) -> None:
        data_addr, data_len = request.data_descriptors[0]
        if data_len < VIRTIO_BLK_ID_BYTES:
            self._complete_io(vring, desc_chain, request.status_addr, VIRTIO_BLK_S_IOERR)
            return
        serial = self._device_id.encode("utf-8")[:VIRTIO_BLK_ID_BYTES]
        payload = serial.ljust(VIRTIO_BLK_ID_BYTES, b"\x00")
        try:
            desc_chain.memory.write(data_addr, payload)
            status = VIRTIO_BLK_S_OK
        except GuestMemoryError:
            status = VIRTIO_BLK_S_IOERR
        self._complete_io(vring, desc_chain, request.status_addr, status)

    def process_queue(self, vring: Virtqueue) -> bool:
        """Handle every available request and reap finished I/O.

        Return True if any request was seen or I/O is still outstanding.
        """
        busy = False
        handlers = {
            RequestType.IN: self._process_read,
            RequestType.OUT: self._process_write,
            RequestType.FLUSH: self._process_flush,
            RequestType.GET_DEVICE_ID: self._process_get_device_id,
        }
        while (desc_chain := vring.pop_descriptor_chain()) is not None:
            try:
                request = Request.parse(desc_chain)
            except RequestError as exc:
                logger.error("failed to parse available descriptor chain: %r", exc)
                self._complete_bad_chain(vring, desc_chain)
            else:
                handler = handlers.get(request.request_type)
                if handler is None:
                    logger.error("unknown request type: %r", request.request_type)
                    self._complete_io(
                        vring, desc_chain, request.status_addr, VIRTIO_BLK_S_UNSUPP
                    )
                else:
                    handler(request, desc_chain, vring)
            busy = True

        try:
            self._io_channel.submit()
        except VhostUserBlockError as exc:
            logger.error("failed to submit io channel: %r", exc)
        self._poll_io(vring)
        busy = busy or self._io_channel.busy()

        if self._ios_pending_signal:
            needs_signalling = vring.needs_notification() if self.event_idx else True
            if needs_signalling:
                vring.signal_used_queue()
                self._ios_pending_signal = False

        return busy