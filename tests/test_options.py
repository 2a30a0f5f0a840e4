import base64
import textwrap

import pytest

from ubiblk.errors import InvalidParameterError
from ubiblk.options import (
    CipherMethod,
    KeyEncryptionCipher,
    Options,
    parse_key_encryption_cipher,
    parse_options,
)

BASE_YAML = """
path: "/path/to/image"
socket: "/path/to/socket"
"""


def _yaml(extra: str = "") -> str:
    return BASE_YAML + textwrap.dedent(extra)


def test_key_encryption_cipher():
    key_material = b"secret" * 4
    encoded_key = base64.b64encode(key_material).decode()
    auth = base64.b64encode(b"vm-example").decode()
    text = textwrap.dedent(
        f"""
        method: aes256-gcm
        key: "{encoded_key}"
        init_vector: "UEt+wI+Ldq1UgQ/P"
        auth_data: "{auth}"
        """
    )
    cipher = parse_key_encryption_cipher(text)
    assert cipher.method is CipherMethod.AES256_GCM
    assert cipher.key == key_material
    assert cipher.init_vector == bytes(
        [0x50, 0x4B, 0x7E, 0xC0, 0x8F, 0x8B, 0x76, 0xAD, 0x54, 0x81, 0x0F, 0xCF]
    )
    assert cipher.auth_data == b"vm-example"


def test_key_encryption_cipher_default():
    cipher = KeyEncryptionCipher()
    assert cipher.method is CipherMethod.NONE
    assert (cipher.key, cipher.init_vector, cipher.auth_data) == (None, None, None)


def test_key_encryption_cipher_none_method():
    cipher = KeyEncryptionCipher.from_dict({"method": "none"})
    assert cipher.method is CipherMethod.NONE
    assert cipher.key is None


def test_key_encryption_cipher_unknown_method():
    with pytest.raises(InvalidParameterError):
        KeyEncryptionCipher.from_dict({"method": "rot13"})


def test_key_encryption_cipher_missing_method():
    with pytest.raises(InvalidParameterError, match="method"):
        KeyEncryptionCipher.from_dict({})


def test_key_encryption_cipher_bad_base64():
    with pytest.raises(InvalidParameterError):
        KeyEncryptionCipher.from_dict({"method": "aes256-gcm", "key": "abc"})


def test_decode_encryption_keys():
    first = b"secret" * 8
    second = b"token" * 8
    text = _yaml(
        f"""
        encryption_key:
          - "{base64.b64encode(first).decode()}"
          - "{base64.b64encode(second).decode()}"
        """
    )
    options = parse_options(text)
    assert options.encryption_key == (first, second)


def test_encryption_key_wrong_length():
    encoded = base64.b64encode(b"secret").decode()
    text = _yaml(
        f"""
        encryption_key:
          - "{encoded}"
        """
    )
    with pytest.raises(InvalidParameterError):
        parse_options(text)


def test_missing_encryption_key():
    options = parse_options(BASE_YAML)
    assert options.encryption_key is None


def test_default_values():
    options = parse_options(BASE_YAML)
    assert options.path == "/path/to/image"
    assert options.socket == "/path/to/socket"
    assert not options.copy_on_read
    assert not options.track_written
    assert not options.write_through
    assert not options.skip_sync
    assert options.device_id == "ubiblk"
    assert options.num_queues == 1
    assert options.queue_size == 64
    assert options.seg_size_max == 65536
    assert options.seg_count_max == 4
    assert options.poll_queue_timeout_us == 1000
    assert options.cpus is None
    assert options.image_path is None
    assert options.metadata_path is None
    assert options.io_debug_path is None


def test_from_dict_matches_constructor_defaults():
    parsed = Options.from_dict({"path": "/img", "socket": "/sock"})
    assert parsed == Options(path="/img", socket="/sock")


def test_device_id_length():
    options = parse_options(_yaml('device_id: "12345678901234567890"\n'))
    assert options.device_id == "12345678901234567890"
    with pytest.raises(InvalidParameterError, match="device_id"):
        parse_options(_yaml('device_id: "123456789012345678901"\n'))


def test_write_through_enabled():
    options = parse_options(_yaml("write_through: true\n"))
    assert options.write_through


def test_cpus_parsing():
    text = _yaml(
        """
        num_queues: 2
        cpus:
          - 1
          - 2
        """
    )
    options = parse_options(text)
    assert options.cpus == [1, 2]
    assert options.num_queues == 2


@pytest.mark.parametrize("missing", ["path", "socket"])
def test_required_fields(missing):
    data = {"path": "/img", "socket": "/sock"}
    del data[missing]
    with pytest.raises(InvalidParameterError, match=missing):
        Options.from_dict(data)


def test_negative_integer_rejected():
    with pytest.raises(InvalidParameterError):
        parse_options(_yaml("queue_size: -1\n"))


def test_seg_size_max_out_of_u32_range():
    with pytest.raises(InvalidParameterError):
        parse_options(_yaml(f"seg_size_max: {2**32}\n"))


def test_wrong_type_rejected():
    with pytest.raises(InvalidParameterError):
        parse_options(_yaml('skip_sync: "yes please"\n'))


def test_non_mapping_document_rejected():
    with pytest.raises(InvalidParameterError):
        parse_options("- just\n- a list\n")


def test_malformed_yaml_rejected():
    with pytest.raises(InvalidParameterError):
        parse_options("path: [unclosed\n")


def test_optional_paths_parsed():
    text = _yaml(
        """
        image_path: "/img2"
        metadata_path: "/meta"
        io_debug_path: "/debug"
        """
    )
    options = parse_options(text)
    assert (options.image_path, options.metadata_path, options.io_debug_path) == (
        "/img2",
        "/meta",
        "/debug",
    )