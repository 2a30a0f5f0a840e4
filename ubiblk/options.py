"""Backend configuration and key-encryption settings loaded from YAML."""

from __future__ import annotations

import base64
import binascii
import enum
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import yaml

from .block import VIRTIO_BLK_ID_BYTES
from .errors import InvalidParameterError

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1
_U128_MAX = 2**128 - 1

_REQUIRED = object()


class CipherMethod(enum.Enum):
    """Cipher used to wrap the data encryption keys."""

    NONE = "none"
    AES256_GCM = "aes256-gcm"


def _fetch(data: Mapping[str, Any], name: str, default: Any) -> Any:
    if name in data:
        return data[name]
    if default is _REQUIRED:
        raise InvalidParameterError(f"missing field `{name}`")
    return default


def _string(data: Mapping[str, Any], name: str, default: Any = _REQUIRED) -> str:
    value = _fetch(data, name, default)
    if not isinstance(value, str):
        raise InvalidParameterError(f"field `{name}` must be a string")
    return value


def _optional_string(data: Mapping[str, Any], name: str) -> str | None:
    value = data.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidParameterError(f"field `{name}` must be a string")
    return value


def _check_unsigned(name: str, value: Any, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameterError(f"field `{name}` must be an integer")
    if not 0 <= value <= maximum:
        raise InvalidParameterError(f"field `{name}` is out of range: {value}")
    return value


def _unsigned(data: Mapping[str, Any], name: str, default: int, maximum: int) -> int:
    return _check_unsigned(name, _fetch(data, name, default), maximum)


def _boolean(data: Mapping[str, Any], name: str, default: bool) -> bool:
    value = _fetch(data, name, default)
    if not isinstance(value, bool):
        raise InvalidParameterError(f"field `{name}` must be a boolean")
    return value


def _decode_base64(name: str, value: Any) -> bytes:
    if not isinstance(value, str):
        raise InvalidParameterError(f"field `{name}` must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidParameterError(f"field `{name}`: {exc}") from exc


def _optional_base64(data: Mapping[str, Any], name: str) -> bytes | None:
    value = data.get(name)
    if value is None:
        return None
    return _decode_base64(name, value)


def _load_mapping(text: str) -> Mapping[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise InvalidParameterError(f"invalid YAML: {exc}") from exc
    if not isinstance(data, Mapping):
        raise InvalidParameterError("configuration must be a YAML mapping")
    return data


@dataclass
class KeyEncryptionCipher:
    """How the data encryption keys in the configuration are wrapped."""

    method: CipherMethod = CipherMethod.NONE
    key: bytes | None = None
    init_vector: bytes | None = None
    auth_data: bytes | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KeyEncryptionCipher:
        """Build from a mapping whose binary fields are base64 strings."""
        raw_method = _fetch(data, "method", _REQUIRED)
        try:
            method = CipherMethod(raw_method)
        except ValueError as exc:
            raise InvalidParameterError(
                f"unknown cipher method: {raw_method!r}"
            ) from exc
        return cls(
            method=method,
            key=_optional_base64(data, "key"),
            init_vector=_optional_base64(data, "init_vector"),
            auth_data=_optional_base64(data, "auth_data"),
        )


def _encryption_keys(data: Mapping[str, Any]) -> tuple[bytes, bytes] | None:
    value = data.get("encryption_key")
    if value is None:
        return None
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise InvalidParameterError("field `encryption_key` must be a pair of strings")
    if len(value) != 2:
        raise InvalidParameterError(
            f"field `encryption_key` must hold 2 elements, got {len(value)}"
        )
    first, second = value
    return (
        _decode_base64("encryption_key", first),
        _decode_base64("encryption_key", second),
    )


def _cpus(data: Mapping[str, Any]) -> list[int] | None:
    value = data.get("cpus")
    if value is None:
        return None
    if not isinstance(value, list):
        raise InvalidParameterError("field `cpus` must be a list of integers")
    return [_check_unsigned("cpus", cpu, _U64_MAX) for cpu in value]


def _device_id(data: Mapping[str, Any]) -> str:
    device_id = _string(data, "device_id", "ubiblk")
    if len(device_id.encode("utf-8")) > VIRTIO_BLK_ID_BYTES:
        raise InvalidParameterError(
            f"device_id exceeds maximum of {VIRTIO_BLK_ID_BYTES} bytes"
        )
    return device_id


@dataclass
class Options:
    """Settings of one block backend instance."""

    path: str
    socket: str
    image_path: str | None = None
    metadata_path: str | None = None
    io_debug_path: str | None = None
    cpus: list[int] | None = None
    num_queues: int = 1
    queue_size: int = 64
    seg_size_max: int = 65536
    seg_count_max: int = 4
    poll_queue_timeout_us: int = 1000
    skip_sync: bool = False
    copy_on_read: bool = False
    track_written: bool = False
    write_through: bool = False
    encryption_key: tuple[bytes, bytes] | None = None
    device_id: str = "ubiblk"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Options:
        """Build from a mapping, applying defaults and validating every field."""
        return cls(
            path=_string(data, "path"),
            socket=_string(data, "socket"),
            image_path=_optional_string(data, "image_path"),
            metadata_path=_optional_string(data, "metadata_path"),
            io_debug_path=_optional_string(data, "io_debug_path"),
            cpus=_cpus(data),
            num_queues=_unsigned(data, "num_queues", 1, _U64_MAX),
            queue_size=_unsigned(data, "queue_size", 64, _U64_MAX),
            seg_size_max=_unsigned(data, "seg_size_max", 65536, _U32_MAX),
            seg_count_max=_unsigned(data, "seg_count_max", 4, _U32_MAX),
            poll_queue_timeout_us=_unsigned(
                data, "poll_queue_timeout_us", 1000, _U128_MAX
            ),
            skip_sync=_boolean(data, "skip_sync", False),
            copy_on_read=_boolean(data, "copy_on_read", False),
            track_written=_boolean(data, "track_written", False),
            write_through=_boolean(data, "write_through", False),
            encryption_key=_encryption_keys(data),
            device_id=_device_id(data),
        )


def parse_key_encryption_cipher(text: str) -> KeyEncryptionCipher:
    """Parse a key-encryption cipher description from YAML text."""
    return KeyEncryptionCipher.from_dict(_load_mapping(text))


def parse_options(text: str) -> Options:
    """Parse backend options from YAML text."""
    return Options.from_dict(_load_mapping(text))