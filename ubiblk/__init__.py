"""Storage side of a virtio-blk device: request parsing, queue processing, file-backed I/O and configuration."""

__version__ = "0.2.0"