"""Virtio block device configuration layout and feature bit names."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar, Iterator


class CoreFeature(IntEnum):
    """Device-independent virtio feature bits."""

    NOTIFY_ON_EMPTY = 24
    ANY_LAYOUT = 27
    VERSION_1 = 32
    ACCESS_PLATFORM = 33
    IOMMU_PLATFORM = 33
    RING_PACKED = 34
    IN_ORDER = 35
    ORDER_PLATFORM = 36
    SR_IOV = 37
    NOTIFICATION_DATA = 38
    NOTIF_CONFIG_DATA = 39
    RING_RESET = 40
    ADMIN_VQ = 41


class RingFeature(IntEnum):
    """Virtqueue ring feature bits."""

    INDIRECT_DESC = 28
    EVENT_IDX = 29


class BlockFeature(IntEnum):
    """Feature bits specific to virtio-blk."""

    BARRIER = 0
    SIZE_MAX = 1
    SEG_MAX = 2
    GEOMETRY = 4
    RO = 5
    BLK_SIZE = 6
    SCSI = 7
    FLUSH = 9
    TOPOLOGY = 10
    CONFIG_WCE = 11
    MQ = 12
    DISCARD = 13
    WRITE_ZEROES = 14
    SECURE_ERASE = 16


VIRTIO_F_NOTIFY_ON_EMPTY = CoreFeature.NOTIFY_ON_EMPTY.value
VIRTIO_F_ANY_LAYOUT = CoreFeature.ANY_LAYOUT.value
VIRTIO_F_VERSION_1 = CoreFeature.VERSION_1.value
VIRTIO_F_ACCESS_PLATFORM = CoreFeature.ACCESS_PLATFORM.value
VIRTIO_F_IOMMU_PLATFORM = CoreFeature.IOMMU_PLATFORM.value
VIRTIO_F_RING_PACKED = CoreFeature.RING_PACKED.value
VIRTIO_F_IN_ORDER = CoreFeature.IN_ORDER.value
VIRTIO_F_ORDER_PLATFORM = CoreFeature.ORDER_PLATFORM.value
VIRTIO_F_SR_IOV = CoreFeature.SR_IOV.value
VIRTIO_F_NOTIFICATION_DATA = CoreFeature.NOTIFICATION_DATA.value
VIRTIO_F_NOTIF_CONFIG_DATA = CoreFeature.NOTIF_CONFIG_DATA.value
VIRTIO_F_RING_RESET = CoreFeature.RING_RESET.value
VIRTIO_F_ADMIN_VQ = CoreFeature.ADMIN_VQ.value

VIRTIO_RING_F_INDIRECT_DESC = RingFeature.INDIRECT_DESC.value
VIRTIO_RING_F_EVENT_IDX = RingFeature.EVENT_IDX.value

VIRTIO_BLK_F_BARRIER = BlockFeature.BARRIER.value
VIRTIO_BLK_F_SIZE_MAX = BlockFeature.SIZE_MAX.value
VIRTIO_BLK_F_SEG_MAX = BlockFeature.SEG_MAX.value
VIRTIO_BLK_F_GEOMETRY = BlockFeature.GEOMETRY.value
VIRTIO_BLK_F_RO = BlockFeature.RO.value
VIRTIO_BLK_F_BLK_SIZE = BlockFeature.BLK_SIZE.value
VIRTIO_BLK_F_SCSI = BlockFeature.SCSI.value
VIRTIO_BLK_F_FLUSH = BlockFeature.FLUSH.value
VIRTIO_BLK_F_TOPOLOGY = BlockFeature.TOPOLOGY.value
VIRTIO_BLK_F_CONFIG_WCE = BlockFeature.CONFIG_WCE.value
VIRTIO_BLK_F_MQ = BlockFeature.MQ.value
VIRTIO_BLK_F_DISCARD = BlockFeature.DISCARD.value
VIRTIO_BLK_F_WRITE_ZEROES = BlockFeature.WRITE_ZEROES.value
VIRTIO_BLK_F_SECURE_ERASE = BlockFeature.SECURE_ERASE.value

VHOST_USER_F_PROTOCOL_FEATURES = 30

# virtio block request types and status codes
VIRTIO_BLK_T_IN = 0
VIRTIO_BLK_T_OUT = 1
VIRTIO_BLK_T_FLUSH = 4
VIRTIO_BLK_T_GET_ID = 8

VIRTIO_BLK_S_OK = 0
VIRTIO_BLK_S_IOERR = 1
VIRTIO_BLK_S_UNSUPP = 2

VIRTIO_BLK_ID_BYTES = 20


@dataclass
class VirtioBlockGeometry:
    """Legacy disk geometry reported to the guest."""

    cylinders: int = 0
    heads: int = 0
    sectors: int = 0


@dataclass
class VirtioBlockConfig:
    """The virtio-blk device configuration space, packed little-endian."""

    capacity: int = 0
    size_max: int = 0
    seg_max: int = 0
    geometry: VirtioBlockGeometry = field(default_factory=VirtioBlockGeometry)
    blk_size: int = 0
    physical_block_exp: int = 0
    alignment_offset: int = 0
    min_io_size: int = 0
    opt_io_size: int = 0
    writeback: int = 0
    unused: int = 0
    num_queues: int = 0
    max_discard_sectors: int = 0
    max_discard_seg: int = 0
    discard_sector_alignment: int = 0
    max_write_zeroes_sectors: int = 0
    max_write_zeroes_seg: int = 0
    write_zeroes_may_unmap: int = 0
    unused1: bytes = b"\x00\x00\x00"

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<QIIHBBIBBHIBBHIIIIIB3s")

    def to_bytes(self) -> bytes:
        """Serialise into the packed configuration-space layout."""
        g = self.geometry
        return self.LAYOUT.pack(
            self.capacity,
            self.size_max,
            self.seg_max,
            g.cylinders,
            g.heads,
            g.sectors,
            self.blk_size,
            self.physical_block_exp,
            self.alignment_offset,
            self.min_io_size,
            self.opt_io_size,
            self.writeback,
            self.unused,
            self.num_queues,
            self.max_discard_sectors,
            self.max_discard_seg,
            self.discard_sector_alignment,
            self.max_write_zeroes_sectors,
            self.max_write_zeroes_seg,
            self.write_zeroes_may_unmap,
            bytes(self.unused1),
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> VirtioBlockConfig:
        """Parse the packed configuration-space layout."""
        if len(data) != cls.LAYOUT.size:
            raise ValueError(
                f"config must be {cls.LAYOUT.size} bytes, got {len(data)}"
            )
        (
            capacity,
            size_max,
            seg_max,
            cylinders,
            heads,
            sectors,
            *rest,
        ) = cls.LAYOUT.unpack(bytes(data))
        return cls(
            capacity,
            size_max,
            seg_max,
            VirtioBlockGeometry(cylinders, heads, sectors),
            *rest,
        )


def _named_bits() -> Iterator[tuple[int, str]]:
    """Yield (bit, name) pairs in the order features are described."""
    for feature in sorted(CoreFeature, key=lambda f: f.name):
        yield feature.value, f"VIRTIO_F_{feature.name}"
    for feature in sorted(BlockFeature, key=lambda f: f.value):
        yield feature.value, f"VIRTIO_BLK_F_{feature.name}"
    for feature in sorted(RingFeature, key=lambda f: f.name):
        yield feature.value, f"VIRTIO_RING_F_{feature.name}"
    yield VHOST_USER_F_PROTOCOL_FEATURES, "VHOST_USER_F_PROTOCOL_FEATURES"


def features_to_str(features: int) -> str:
    """Describe a feature bitmask by name, listing unknown bits in hex."""
    remaining = features
    names = []
    for bit, name in _named_bits():
        mask = 1 << bit
        if remaining & mask:
            names.append(name)
            remaining &= ~mask
    if remaining:
        names.append(f"0x{remaining:x}")
    return f"Features (0x{features:x}): {' | '.join(names)}\n"