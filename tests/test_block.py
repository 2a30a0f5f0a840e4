import pytest

from ubiblk.block import (
    VIRTIO_BLK_F_DISCARD,
    VIRTIO_BLK_F_FLUSH,
    VirtioBlockConfig,
    VirtioBlockGeometry,
    features_to_str,
)


def test_features_to_str_none():
    assert features_to_str(0) == "Features (0x0): \n"


def test_features_to_str_known():
    features = 1 << VIRTIO_BLK_F_FLUSH
    assert features_to_str(features) == "Features (0x200): VIRTIO_BLK_F_FLUSH\n"


def test_features_to_str_mixed():
    unknown = 1 << 63
    features = (1 << VIRTIO_BLK_F_FLUSH) | (1 << VIRTIO_BLK_F_DISCARD) | unknown
    expected = (
        f"Features (0x{features:x}): VIRTIO_BLK_F_FLUSH | VIRTIO_BLK_F_DISCARD"
        f" | 0x{unknown:x}\n"
    )
    assert features_to_str(features) == expected


def test_features_to_str_shared_bit_named_once():
    assert features_to_str(1 << 33) == (
        "Features (0x200000000): VIRTIO_F_ACCESS_PLATFORM\n"
    )


def test_features_to_str_protocol_bit():
    assert features_to_str(1 << 30) == (
        "Features (0x40000000): VHOST_USER_F_PROTOCOL_FEATURES\n"
    )


def test_config_size_is_packed():
    assert len(VirtioBlockConfig().to_bytes()) == 60


def test_config_field_offsets():
    data = VirtioBlockConfig(capacity=8, blk_size=512, num_queues=3).to_bytes()
    assert data[0:8] == (8).to_bytes(8, "little")
    assert data[20:24] == (512).to_bytes(4, "little")
    assert data[34:36] == (3).to_bytes(2, "little")


def test_config_round_trip():
    config = VirtioBlockConfig(
        capacity=1 << 40,
        size_max=65536,
        seg_max=4,
        geometry=VirtioBlockGeometry(cylinders=100, heads=16, sectors=63),
        blk_size=512,
        min_io_size=1,
        opt_io_size=1,
        writeback=1,
        num_queues=2,
        write_zeroes_may_unmap=1,
    )
    assert VirtioBlockConfig.from_bytes(config.to_bytes()) == config


def test_config_from_bytes_wrong_length():
    with pytest.raises(ValueError):
        VirtioBlockConfig.from_bytes(b"\x00" * 59)