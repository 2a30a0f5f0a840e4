# ubiblk

`ubiblk` is the storage side of a virtio-blk device. It takes requests that a
guest places on a virtqueue, checks and parses them, moves data between guest
memory and aligned I/O buffers, carries out reads, writes and flushes against
a raw disk image file, and writes the status byte back for the guest.

## Modules

- `ubiblk.options` — the YAML configuration: `Options`, `KeyEncryptionCipher`,
  `CipherMethod`, and the helpers `parse_options` and
  `parse_key_encryption_cipher`. Defaults: one queue of 64 entries, segments
  of 65536 bytes, at most four segments per request, a poll timeout of
  1000 µs, device id `ubiblk`. A device id longer than 20 bytes, a missing
  `path` or `socket`, a value of the wrong type or a key that is not valid
  base64 raises `InvalidParameterError`.
- `ubiblk.block_device` — the abstract `BlockDevice` and `IoChannel`
  interfaces and `SECTOR_SIZE` (512).
- `ubiblk.uring` — `UringBlockDevice` and `UringIoChannel`: a block device on
  a regular file. A channel queues requests in a bounded ring, runs them when
  `submit()` is called, and reports `(request_id, success)` pairs from
  `poll()`. A request that does not fit in the ring is reported as failed.
  Flushes are completed at once when the file was opened with `sync`.
- `ubiblk.virtqueue` — an in-process model of guest memory and split
  virtqueues: `GuestMemory`, `Descriptor`, `DescriptorChain`, `Virtqueue`,
  and the flags `VRING_DESC_F_NEXT` and `VRING_DESC_F_WRITE`.
- `ubiblk.request` — `Request.parse` turns a descriptor chain into a
  `Request` with a `RequestType`, or raises one of the `RequestError`
  subclasses (`DescriptorChainTooShort`, `UnexpectedWriteOnlyDescriptor`,
  `UnexpectedReadOnlyDescriptor`, `DescriptorLengthTooSmall`,
  `CheckedOffsetError`, `GuestMemoryRequestError`).
- `ubiblk.backend_thread` — `UbiBlkBackendThread`, which drains one queue,
  hands work to an I/O channel through reusable request slots, and completes
  requests on the used ring. With `io_debug_path` set it logs every read and
  write with its sector, length and data in hex.
- `ubiblk.backend` — `UbiBlkBackend`, which reports the offered feature bits
  and protocol features, exposes the configuration space from `get_config`,
  and dispatches queue events to one worker per queue, pinning workers to the
  CPUs in `cpus` when given.
- `ubiblk.block` — `VirtioBlockConfig` (packed little-endian layout via
  `to_bytes` / `from_bytes`), `VirtioBlockGeometry`, virtio feature-bit
  constants and `features_to_str`.
- `ubiblk.aligned_buffer`, `ubiblk.buffer_pool` — `AlignedBuf`, a zeroed byte
  buffer whose first byte sits on a power-of-two boundary, and
  `AlignedBufferPool`, a fixed pool of them handed out by index.
- `ubiblk.debug` — `hexdump`, `encode_hex`, `decode_hex`.
- `ubiblk.errors` — `VhostUserBlockError` and its subclasses.

## Configuration

```yaml
path: /var/lib/images/disk.raw
socket: /run/ubiblk/disk.sock
num_queues: 2
cpus: [1, 2]
queue_size: 64
write_through: true
device_id: data-disk-01
```

```python
from pathlib import Path

from ubiblk.options import parse_options

options = parse_options(Path("disk.yaml").read_text())
print(options.num_queues, options.queue_size, options.device_id)
```

## Reading and writing a disk image

```python
from ubiblk.aligned_buffer import AlignedBuf
from ubiblk.uring import UringBlockDevice

device = UringBlockDevice("disk.raw", 8, False, False, False)
with device.create_channel() as channel:
    buf = AlignedBuf(512, 4096)
    buf.view()[:] = b"\xab" * 512
    channel.add_write(0, 1, buf, 1)
    channel.submit()

    done = []
    while channel.busy():
        done.extend(channel.poll())
    print(done)  # [(1, True)]
```

The image size must be a whole number of 512-byte sectors and the queue size
a positive power of two; otherwise `InvalidParameterError` is raised. A
missing file raises `BlockIoError`.

## Serving a queue

```python
from ubiblk.backend import EventSet, UbiBlkBackend
from ubiblk.block import VIRTIO_BLK_T_OUT
from ubiblk.options import Options
from ubiblk.uring import UringBlockDevice
from ubiblk.virtqueue import (
    VRING_DESC_F_NEXT,
    VRING_DESC_F_WRITE,
    Descriptor,
    GuestMemory,
    Virtqueue,
)

options = Options(path="disk.raw", socket="disk.sock")
memory = GuestMemory(0x10000)
device = UringBlockDevice(options.path, options.queue_size, False, False, False)
backend = UbiBlkBackend(options, memory, device, 4096)

# A write of one sector: header, data, status byte.
memory.write_u32(0x1000, VIRTIO_BLK_T_OUT)
memory.write_u64(0x1008, 0)
memory.write(0x2000, b"\xcd" * 512)
queue = Virtqueue(memory, 16)
queue.add_chain([
    Descriptor(0x1000, 16, VRING_DESC_F_NEXT, 1),
    Descriptor(0x2000, 512, VRING_DESC_F_NEXT, 2),
    Descriptor(0x3000, 1, VRING_DESC_F_WRITE),
])

backend.handle_event(0, EventSet.IN, [queue], 0)
print(memory.read(0x3000, 1), queue.used)  # b'\x00' [(0, 0)]
```

`handle_event` raises `OSError` for any event set other than `EventSet.IN`
and for any device event other than 0.

## Debug helpers

```python
from ubiblk.block import features_to_str
from ubiblk.debug import hexdump

print(hexdump(b"Hello, world!", 13), end="")
print(features_to_str(1 << 9), end="")  # Features (0x200): VIRTIO_BLK_F_FLUSH
```

## What this package does not do

- It does not listen on a vhost-user socket or talk to a hypervisor. The
  `socket` option is parsed and kept, but nothing serves it; guest memory and
  virtqueues are the in-process models in `ubiblk.virtqueue`, driven by
  calling `UbiBlkBackend.handle_event` yourself. There is no command-line
  program.
- It does not encrypt data. `encryption_key` and `KeyEncryptionCipher` are
  parsed and base64-decoded, but no block device uses them.
- It has no copy-on-read image layer: `image_path`, `metadata_path`,
  `copy_on_read` and `track_written` are parsed but not acted on.
- `UringIoChannel` does not use the kernel's io_uring interface; requests run
  synchronously, with positional reads and writes, when `submit()` is called.