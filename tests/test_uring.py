import tempfile
import time
from pathlib import Path

import pytest

from ubiblk.aligned_buffer import AlignedBuf
from ubiblk.block_device import SECTOR_SIZE
from ubiblk.errors import BlockIoError, InvalidParameterError
from ubiblk.uring import UringBlockDevice, UringIoChannel


def spin_until_complete(chan):
    completed = []
    while chan.busy():
        completed.extend(chan.poll())
        time.sleep(0.001)
    return completed


def filled(value):
    buf = AlignedBuf(SECTOR_SIZE)
    buf.view()[:] = bytes([value]) * SECTOR_SIZE
    return buf


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "disk.img"
    path.write_bytes(b"")
    return path


@pytest.fixture
def disk_image():
    # Direct I/O needs a disk-backed filesystem, not tmpfs.
    with tempfile.TemporaryDirectory(dir=Path(__file__).parent) as directory:
        path = Path(directory) / "disk.img"
        path.write_bytes(b"")
        yield path


def test_create_channel_and_basic_io(image):
    device = UringBlockDevice(image, 8, False, False, False)
    with device.create_channel() as chan:
        pattern = bytes([0xAB]) * SECTOR_SIZE
        chan.add_write(0, 1, filled(0xAB), 1)
        chan.submit()
        assert spin_until_complete(chan) == [(1, True)]

        read_buf = AlignedBuf(SECTOR_SIZE)
        chan.add_read(0, 1, read_buf, 2)
        chan.submit()
        assert spin_until_complete(chan) == [(2, True)]
        assert bytes(read_buf) == pattern
    assert image.read_bytes() == pattern


def test_create_channel_and_basic_io_readonly(image):
    device = UringBlockDevice(image, 8, True, False, False)
    with device.create_channel() as chan:
        read_buf = AlignedBuf(SECTOR_SIZE)
        chan.add_read(0, 1, read_buf, 2)
        chan.submit()
        assert spin_until_complete(chan) == [(2, True)]

        chan.add_write(0, 1, filled(0xAB), 1)
        chan.submit()
        assert spin_until_complete(chan) == [(1, False)]
    assert image.read_bytes() == b""


def test_new_with_unaligned_size_fails(tmp_path):
    path = tmp_path / "odd.img"
    path.write_bytes(b"\0" * (SECTOR_SIZE + 1))
    with pytest.raises(InvalidParameterError):
        UringBlockDevice(path, 8, False, False, False)


def test_new_invalid_path_fails(tmp_path):
    with pytest.raises(BlockIoError):
        UringBlockDevice(tmp_path / "ubiblk_nonexistent_file", 8, False, False, False)


def test_new_invalid_queue_size_fails(image):
    with pytest.raises(InvalidParameterError):
        UringBlockDevice(image, 3, False, False, False)


def test_new_zero_queue_size_fails(image):
    with pytest.raises(InvalidParameterError):
        UringBlockDevice(image, 0, False, False, False)


def test_sector_count_from_file_size(tmp_path):
    path = tmp_path / "eight.img"
    path.write_bytes(b"\0" * (SECTOR_SIZE * 8))
    assert UringBlockDevice(path, 8, False, False, False).sector_count() == 8


def test_busy_and_flush(image):
    device = UringBlockDevice(image, 8, False, False, False)
    with device.create_channel() as chan:
        chan.add_write(0, 1, filled(0xCD), 1)
        chan.add_flush(2)
        assert chan.busy()
        chan.submit()
        assert chan.busy()
        result = spin_until_complete(chan)
        assert sorted(result) == [(1, True), (2, True)]
        assert not chan.busy()


def test_sync_flush_noop(image):
    device = UringBlockDevice(image, 8, False, False, True)
    with device.create_channel() as chan:
        chan.add_flush(1)
        assert chan.busy()
        chan.submit()
        assert spin_until_complete(chan) == [(1, True)]


def test_queue_overflow(image):
    device = UringBlockDevice(image, 1, False, False, False)
    with device.create_channel() as chan:
        chan.add_write(0, 1, filled(0xAA), 1)
        chan.add_write(1, 1, filled(0xBB), 2)
        chan.submit()
        result = spin_until_complete(chan)
        assert (1, True) in result
        assert (2, False) in result
    assert image.read_bytes() == bytes([0xAA]) * SECTOR_SIZE


def test_busy_reports_finished_requests(image):
    with UringIoChannel(image, 1, False, False, False) as chan:
        assert not chan.busy()
        chan.add_write(0, 1, filled(0x11), 1)
        chan.add_write(1, 1, filled(0x22), 2)
        assert chan.busy()
        assert chan.poll() == [(2, False)]
        chan.submit()
        assert spin_until_complete(chan) == [(1, True)]
        assert not chan.busy()


def test_ring_size_rounds_up_to_power_of_two(image):
    with UringIoChannel(image, 3, False, False, False) as chan:
        for request_id in range(5):
            chan.add_flush(request_id)
        chan.submit()
        result = spin_until_complete(chan)
        assert sorted(result) == [(0, True), (1, True), (2, True), (3, True), (4, False)]


def test_channel_zero_ring_size_fails(image):
    with pytest.raises(BlockIoError):
        UringIoChannel(image, 0, False, False, False)


def test_submit_after_close_fails(image):
    chan = UringBlockDevice(image, 8, False, False, False).create_channel()
    chan.close()
    chan.add_flush(1)
    with pytest.raises(BlockIoError):
        chan.submit()


def test_direct_io_basic_io(disk_image):
    device = UringBlockDevice(disk_image, 8, False, True, False)
    with device.create_channel() as chan:
        pattern = bytes([0xAC]) * SECTOR_SIZE
        chan.add_write(0, 1, filled(0xAC), 1)
        chan.submit()
        assert spin_until_complete(chan) == [(1, True)]

        read_buf = AlignedBuf(SECTOR_SIZE)
        chan.add_read(0, 1, read_buf, 2)
        chan.submit()
        assert spin_until_complete(chan) == [(2, True)]
        assert bytes(read_buf) == pattern


def test_direct_io_queue_overflow(disk_image):
    device = UringBlockDevice(disk_image, 1, False, True, False)
    with device.create_channel() as chan:
        chan.add_write(0, 1, filled(0xAA), 1)
        chan.add_write(1, 1, filled(0xBB), 2)
        chan.submit()
        result = spin_until_complete(chan)
        assert (1, True) in result
        assert (2, False) in result