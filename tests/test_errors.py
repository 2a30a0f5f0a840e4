import pytest

from ubiblk.errors import (
    BlockIoError,
    ChannelError,
    GuestMemoryAccessError,
    InvalidParameterError,
    IoChannelCreationError,
    MetadataError,
    ThreadCreationError,
    VhostUserBlockError,
)


class _GuestMemoryFault(Exception):
    pass


def test_invalid_parameter_format():
    error = InvalidParameterError("Test error")
    assert str(error) == "Invalid parameter error: Test error"
    assert error.description == "Test error"


def test_io_error_format():
    io_error = OSError("Test IO error")
    error = BlockIoError(io_error)
    assert str(error) == "I/O error: Test IO error"
    assert error.__cause__ is io_error


def test_guest_memory_access_format():
    fault = _GuestMemoryFault("Guest memory error: invalid backend address")
    error = GuestMemoryAccessError(fault)
    assert str(error) == (
        "Guest memory access error: Guest memory error: invalid backend address"
    )


def test_thread_creation_format():
    assert str(ThreadCreationError()) == "Thread creation error"


def test_io_channel_creation_format():
    error = IoChannelCreationError(OSError("Test IO error"))
    assert str(error) == "I/O channel creation error: Test IO error"


def test_channel_error_format():
    assert str(ChannelError()) == "Channel error"


def test_metadata_error_format():
    error = MetadataError("Test metadata error")
    assert str(error) == "Metadata error: Test metadata error"


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ThreadCreationError(), "Thread creation error"),
        (ChannelError(), "Channel error"),
        (InvalidParameterError("x"), "Invalid parameter error: x"),
        (MetadataError("y"), "Metadata error: y"),
        (BlockIoError(OSError("z")), "I/O error: z"),
    ],
)
def test_all_errors_share_base(error, expected):
    with pytest.raises(VhostUserBlockError) as caught:
        raise error
    assert caught.value is error
    assert str(caught.value) == expected