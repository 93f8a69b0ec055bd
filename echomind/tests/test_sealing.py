import pytest

from echomind.domain.exceptions import AuthenticationError, ValidationError
from echomind.infrastructure.security.sealing import (
    NONCE_SIZE,
    TAG_SIZE,
    EncryptedBlob,
    derive_key,
    generate_key,
    open_blob,
    seal,
)


def test_seal_open_roundtrip():
    key = generate_key()
    blob = seal("会话内容".encode("utf-8"), key)
    assert len(blob.nonce) == NONCE_SIZE
    assert len(blob.tag) == TAG_SIZE
    assert open_blob(blob, key).decode("utf-8") == "会话内容"


def test_nonce_is_fresh_per_call():
    key = generate_key()
    assert seal(b"same", key).nonce != seal(b"same", key).nonce


def test_blob_serialization_layout():
    key = generate_key()
    blob = seal(b"payload", key)
    raw = blob.to_bytes()
    assert raw[:NONCE_SIZE] == blob.nonce
    assert raw[NONCE_SIZE : NONCE_SIZE + TAG_SIZE] == blob.tag
    assert open_blob(EncryptedBlob.from_bytes(raw), key) == b"payload"


def test_any_flipped_bit_fails_closed():
    key = generate_key()
    raw = seal(b"attack at dawn", key, associated_data=b"hdr").to_bytes()
    for i in range(len(raw)):
        for bit in (0x01, 0x80):
            tampered = bytearray(raw)
            tampered[i] ^= bit
            with pytest.raises(AuthenticationError):
                open_blob(EncryptedBlob.from_bytes(bytes(tampered)), key, associated_data=b"hdr")


def test_wrong_key_or_associated_data():
    key = generate_key()
    blob = seal(b"x", key, associated_data=b"a")
    with pytest.raises(AuthenticationError):
        open_blob(blob, generate_key(), associated_data=b"a")
    with pytest.raises(AuthenticationError):
        open_blob(blob, key, associated_data=b"b")


def test_truncated_blob():
    with pytest.raises(AuthenticationError):
        EncryptedBlob.from_bytes(b"short")


def test_key_length_is_checked():
    with pytest.raises(ValidationError):
        seal(b"x", b"too-short")


def test_derive_key_is_deterministic_per_salt():
    k1 = derive_key("passphrase", b"salt-1234567890", iterations=1000)
    k2 = derive_key("passphrase", b"salt-1234567890", iterations=1000)
    k3 = derive_key("passphrase", b"other-salt-0000", iterations=1000)
    assert k1 == k2
    assert k1 != k3
    assert len(k1) == 32
    with pytest.raises(ValidationError):
        derive_key("", b"salt")
