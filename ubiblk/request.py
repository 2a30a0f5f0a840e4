"""Parsing of virtio-blk requests from descriptor chains."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from .block import (
    VIRTIO_BLK_T_FLUSH,
    VIRTIO_BLK_T_GET_ID,
    VIRTIO_BLK_T_IN,
    VIRTIO_BLK_T_OUT,
)
from .virtqueue import DescriptorChain, GuestMemory, GuestMemoryError

logger = logging.getLogger(__name__)

_SECTOR_OFFSET = 8


class RequestError(Exception):
    """A descriptor chain does not hold a valid block request."""

    message = "Invalid request"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class GuestMemoryRequestError(RequestError):
    """The request header could not be read from guest memory."""

    message = "Guest gave us bad memory addresses"

    def __init__(self, source: GuestMemoryError) -> None:
        self.source = source
        super().__init__()
        self.__cause__ = source


class CheckedOffsetError(RequestError):
    """A header field lies outside guest memory."""

    message = "Guest gave us offsets that would have overflowed a usize"

    def __init__(self, addr: int, offset: int) -> None:
        self.addr = addr
        self.offset = offset
        super().__init__()


class UnexpectedWriteOnlyDescriptor(RequestError):
    message = "Guest gave us a write only descriptor that protocol says to read from"


class UnexpectedReadOnlyDescriptor(RequestError):
    message = "Guest gave us a read only descriptor that protocol says to write to"


class DescriptorChainTooShort(RequestError):
    message = "Guest gave us too few descriptors in a descriptor chain"


class DescriptorLengthTooSmall(RequestError):
    message = "Guest gave us a descriptor that was too short to use"


class RequestType(enum.Enum):
    NONE = enum.auto()
    IN = enum.auto()
    OUT = enum.auto()
    FLUSH = enum.auto()
    GET_DEVICE_ID = enum.auto()
    UNSUPPORTED = enum.auto()


_TYPES = {
    VIRTIO_BLK_T_IN: RequestType.IN,
    VIRTIO_BLK_T_OUT: RequestType.OUT,
    VIRTIO_BLK_T_FLUSH: RequestType.FLUSH,
    VIRTIO_BLK_T_GET_ID: RequestType.GET_DEVICE_ID,
}


def _type_code(memory: GuestMemory, addr: int) -> int:
    try:
        return memory.read_u32(addr)
    except GuestMemoryError as exc:
        raise GuestMemoryRequestError(exc) from exc


def request_type(memory: GuestMemory, addr: int) -> RequestType:
    """Read the request type from the header at ``addr``."""
    return _TYPES.get(_type_code(memory, addr), RequestType.UNSUPPORTED)


def sector(memory: GuestMemory, addr: int) -> int:
    """Read the starting sector from the header at ``addr``."""
    target = memory.checked_offset(addr, _SECTOR_OFFSET)
    if target is None:
        raise CheckedOffsetError(addr, _SECTOR_OFFSET)
    try:
        return memory.read_u64(target)
    except GuestMemoryError as exc:
        raise GuestMemoryRequestError(exc) from exc


@dataclass
class Request:
    """A parsed block request: header fields, data buffers and status byte."""

    request_type: RequestType
    sector: int
    data_descriptors: list[tuple[int, int]] = field(default_factory=list)
    status_addr: int = 0
    type_code: int | None = None

    @classmethod
    def parse(cls, chain: DescriptorChain) -> Request:
        """Parse a request from a descriptor chain, consuming it."""
        hdr = next(chain, None)
        if hdr is None:
            logger.error("Missing head descriptor")
            raise DescriptorChainTooShort()
        if hdr.is_write_only():
            raise UnexpectedWriteOnlyDescriptor()

        code = _type_code(chain.memory, hdr.addr)
        req = cls(
            request_type=_TYPES.get(code, RequestType.UNSUPPORTED),
            sector=sector(chain.memory, hdr.addr),
            type_code=code,
        )

        desc = next(chain, None)
        if desc is None:
            logger.error("Only head descriptor present: request = %r", req)
            raise DescriptorChainTooShort()

        if not desc.has_next():
            if req.request_type is not RequestType.FLUSH:
                logger.error("Need a data descriptor: request = %r", req)
                raise DescriptorChainTooShort()
        else:
            while desc.has_next():
                if desc.is_write_only() and req.request_type is RequestType.OUT:
                    raise UnexpectedWriteOnlyDescriptor()
                if not desc.is_write_only() and req.request_type in (
                    RequestType.IN,
                    RequestType.GET_DEVICE_ID,
                ):
                    raise UnexpectedReadOnlyDescriptor()
                req.data_descriptors.append((desc.addr, desc.length))
                following = next(chain, None)
                if following is None:
                    logger.error("DescriptorChain corrupted: request = %r", req)
                    raise DescriptorChainTooShort()
                desc = following

        if not desc.is_write_only():
            raise UnexpectedReadOnlyDescriptor()
        if desc.length < 1:
            raise DescriptorLengthTooSmall()
        req.status_addr = desc.addr
        return req