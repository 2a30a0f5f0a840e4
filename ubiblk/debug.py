"""Helpers for dumping and encoding binary data."""

from __future__ import annotations

import string

_HEX_DIGITS = frozenset(string.hexdigits)


def _printable(byte: int) -> str:
    return chr(byte) if 0x20 <= byte <= 0x7E else "."


def hexdump(data: bytes, length: int) -> str:
    """Format the first ``length`` bytes of ``data`` as a canonical hex dump."""
    data = bytes(data[: min(length, len(data))])
    lines = []
    for offset in range(0, len(data), 16):
        chunk = data[offset : offset + 16]
        hex_part = ""
        for i in range(16):
            hex_part += f"{chunk[i]:02x} " if i < len(chunk) else "   "
            if i == 7:
                hex_part += " "
        ascii_part = "".join(_printable(b) for b in chunk).ljust(16)
        lines.append(f"{offset:08x}  {hex_part} |{ascii_part}|\n")
    return "".join(lines)


def encode_hex(data: bytes, length: int) -> str:
    """Encode the first ``length`` bytes of ``data`` as lower-case hex."""
    return bytes(data[: min(length, len(data))]).hex()


def decode_hex(text: str) -> bytes:
    """Decode a hex string strictly; raise ValueError on malformed input."""
    for position, char in enumerate(text):
        if char not in _HEX_DIGITS:
            raise ValueError(f"Invalid character {char!r} at position {position}")
    if len(text) % 2:
        raise ValueError("Odd number of digits")
    return bytes.fromhex(text)