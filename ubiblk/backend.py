"""The vhost-user block backend: device features, config space and queue dispatch."""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Sequence

from .backend_thread import UbiBlkBackendThread
from .block import (
    VHOST_USER_F_PROTOCOL_FEATURES,
    VIRTIO_BLK_F_BLK_SIZE,
    VIRTIO_BLK_F_CONFIG_WCE,
    VIRTIO_BLK_F_FLUSH,
    VIRTIO_BLK_F_MQ,
    VIRTIO_BLK_F_SEG_MAX,
    VIRTIO_BLK_F_SIZE_MAX,
    VIRTIO_BLK_F_TOPOLOGY,
    VIRTIO_F_VERSION_1,
    VIRTIO_RING_F_EVENT_IDX,
    VIRTIO_RING_F_INDIRECT_DESC,
    VirtioBlockConfig,
    features_to_str,
)
from .block_device import SECTOR_SIZE, BlockDevice
from .errors import InvalidParameterError
from .options import Options
from .virtqueue import GuestMemory, Virtqueue

logger = logging.getLogger(__name__)


class EventSet(enum.IntFlag):
    """Readiness events reported for a watched file descriptor."""

    IN = 0x001
    PRIORITY = 0x002
    OUT = 0x004
    ERROR = 0x008
    HANG_UP = 0x010
    READ_HANG_UP = 0x2000
    EXCLUSIVE = 1 << 28
    WAKE_UP = 1 << 29
    ONE_SHOT = 1 << 30
    EDGE_TRIGGERED = 1 << 31


class VhostUserProtocolFeatures(enum.IntFlag):
    """Protocol feature bits negotiated over the vhost-user socket."""

    MQ = 1 << 0
    LOG_SHMFD = 1 << 1
    RARP = 1 << 2
    REPLY_ACK = 1 << 3
    MTU = 1 << 4
    BACKEND_REQ = 1 << 5
    CROSS_ENDIAN = 1 << 6
    CRYPTO_SESSION = 1 << 7
    PAGEFAULT = 1 << 8
    CONFIG = 1 << 9
    BACKEND_SEND_FD = 1 << 10
    HOST_NOTIFIER = 1 << 11
    INFLIGHT_SHMFD = 1 << 12
    RESET_DEVICE = 1 << 13
    INBAND_NOTIFICATIONS = 1 << 14
    CONFIGURE_MEM_SLOTS = 1 << 15
    STATUS = 1 << 16


def _validate_options(options: Options) -> None:
    size = options.queue_size
    if size <= 0 or size & (size - 1):
        raise InvalidParameterError(
            f"queue_size {size} is not a non-zero power of two"
        )
    if options.cpus is not None and len(options.cpus) != options.num_queues:
        raise InvalidParameterError("cpus length must equal num_queues")


class UbiBlkBackend:
    """A virtio-blk device served by one worker per queue."""

    def __init__(
        self,
        options: Options,
        memory: GuestMemory,
        block_device: BlockDevice,
        alignment: int,
    ) -> None:
        _validate_options(options)
        self.options = options
        self.memory = memory
        self.config = VirtioBlockConfig(
            capacity=block_device.sector_count(),
            blk_size=SECTOR_SIZE,
            size_max=options.seg_size_max,
            seg_max=options.seg_count_max,
            min_io_size=1,
            opt_io_size=1,
            num_queues=options.num_queues & 0xFFFF,
            writeback=0 if options.write_through else 1,
        )
        logger.info("virtio_config: %r", self.config)

        self._threads = [
            UbiBlkBackendThread(
                memory, block_device.create_channel(), options, alignment
            )
            for _ in range(options.num_queues)
        ]
        self._locks = [threading.Lock() for _ in self._threads]
        self._queues_per_thread = [1 << i for i in range(options.num_queues)]
        logger.debug("queues_per_thread: %r", self._queues_per_thread)

    @property
    def threads(self) -> tuple[UbiBlkBackendThread, ...]:
        """The per-queue workers, in queue order."""
        return tuple(self._threads)

    def num_queues(self) -> int:
        return self.config.num_queues

    def max_queue_size(self) -> int:
        return self.options.queue_size

    def features(self) -> int:
        """Return the virtio feature bits this device offers."""
        avail = (
            (1 << VIRTIO_BLK_F_SEG_MAX)
            | (1 << VIRTIO_BLK_F_BLK_SIZE)
            | (1 << VIRTIO_BLK_F_SIZE_MAX)
            | (1 << VIRTIO_BLK_F_FLUSH)
            | (1 << VIRTIO_BLK_F_TOPOLOGY)
            | (1 << VIRTIO_BLK_F_MQ)
            | (1 << VIRTIO_BLK_F_CONFIG_WCE)
            | (1 << VIRTIO_RING_F_EVENT_IDX)
            | (1 << VIRTIO_F_VERSION_1)
            | (1 << VIRTIO_RING_F_INDIRECT_DESC)
            | (1 << VHOST_USER_F_PROTOCOL_FEATURES)
        )
        logger.info("avail_features: %s", features_to_str(avail).rstrip())
        return avail

    def acked_features(self, features: int) -> None:
        logger.info(
            "acked_features: 0x%x %s", features, features_to_str(features).rstrip()
        )

    def protocol_features(self) -> VhostUserProtocolFeatures:
        return (
            VhostUserProtocolFeatures.CONFIG
            | VhostUserProtocolFeatures.MQ
            | VhostUserProtocolFeatures.CONFIGURE_MEM_SLOTS
        )

    def set_event_idx(self, enabled: bool) -> None:
        """Turn EVENT_IDX notification suppression on or off for every worker."""
        logger.info("set_event_idx: %s", enabled)
        for lock, thread in zip(self._locks, self._threads):
            with lock:
                thread.event_idx = enabled

    def handle_event(
        self,
        device_event: int,
        evset: EventSet,
        vrings: Sequence[Virtqueue],
        thread_id: int,
    ) -> None:
        """Serve a kick on queue ``device_event``; raise OSError on bad events."""
        if evset != EventSet.IN:
            raise OSError(f"Invalid event set: {evset!r}")

        with self._locks[thread_id]:
            thread = self._threads[thread_id]
            if self.options.cpus is not None:
                thread.pin_to_cpu(self.options.cpus[thread_id])
            if device_event != 0:
                raise OSError(f"Invalid device event: {device_event}")

            vring = vrings[0]
            timeout = self.options.poll_queue_timeout_us / 1_000_000
            last_seen = time.monotonic()
            while True:
                if thread.process_queue(vring):
                    last_seen = time.monotonic()
                elif time.monotonic() - last_seen > timeout:
                    break

            if thread.event_idx:
                # Keep draining until a pass finds nothing new, so no request
                # slips in between the last check and re-enabling notifications.
                while True:
                    vring.enable_notification()
                    if not thread.process_queue(vring):
                        break
            else:
                thread.process_queue(vring)

    def get_config(self, offset: int, size: int) -> bytes:
        return self.config.to_bytes()

    def exit_event(self, thread_index: int) -> threading.Event:
        with self._locks[thread_index]:
            return self._threads[thread_index].kill_evt

    def queues_per_thread(self) -> list[int]:
        return list(self._queues_per_thread)

    def update_memory(self, memory: GuestMemory) -> None:
        """Accept a new memory map; the workers keep using their own."""