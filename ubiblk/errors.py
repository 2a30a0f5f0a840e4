"""Exception hierarchy for the block backend."""

from __future__ import annotations


class VhostUserBlockError(Exception):
    """Base class for every error raised by the block backend."""


class ThreadCreationError(VhostUserBlockError):
    """A worker thread or one of its resources could not be created."""

    def __init__(self) -> None:
        super().__init__("Thread creation error")


class _SourcedError(VhostUserBlockError):
    """An error that wraps an underlying cause."""

    _prefix = ""

    def __init__(self, source: BaseException | str) -> None:
        self.source = source
        super().__init__(f"{self._prefix}: {source}")
        if isinstance(source, BaseException):
            self.__cause__ = source


class IoChannelCreationError(_SourcedError):
    """An I/O channel could not be created."""

    _prefix = "I/O channel creation error"


class GuestMemoryAccessError(_SourcedError):
    """Guest memory could not be read or written."""

    _prefix = "Guest memory access error"


class BlockIoError(_SourcedError):
    """An operating-system level I/O operation failed."""

    _prefix = "I/O error"


class ChannelError(VhostUserBlockError):
    """A request slot or channel was in an unusable state."""

    def __init__(self) -> None:
        super().__init__("Channel error")


class _DescribedError(VhostUserBlockError):
    """An error carrying a free-form description."""

    _prefix = ""

    def __init__(self, description: str) -> None:
        self.description = description
        super().__init__(f"{self._prefix}: {description}")


class InvalidParameterError(_DescribedError, ValueError):
    """A parameter was out of range or otherwise invalid."""

    _prefix = "Invalid parameter error"


class MetadataError(_DescribedError):
    """The on-disk metadata was malformed or inconsistent."""

    _prefix = "Metadata error"