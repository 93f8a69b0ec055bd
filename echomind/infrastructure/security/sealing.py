"""会话文件的认证加密。

使用 AES-256-GCM：每次加密生成新的 96 位随机 nonce，认证标签 128 位。
解密时标签校验失败一律抛出 AuthenticationError，绝不返回部分明文。
密钥只在内存中使用，本模块不负责持久化密钥。
"""

import os
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from echomind.domain.exceptions import AuthenticationError, ValidationError

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
DEFAULT_KDF_ITERATIONS = 200_000


@dataclass(frozen=True)
class EncryptedBlob:
    """nonce + 密文 + 认证标签。序列化顺序为 nonce‖tag‖ciphertext。"""

    nonce: bytes
    ciphertext: bytes = field(repr=False)
    tag: bytes = field(repr=False)

    def to_bytes(self) -> bytes:
        return self.nonce + self.tag + self.ciphertext

    @classmethod
    def from_bytes(cls, raw: bytes) -> "EncryptedBlob":
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise AuthenticationError("Encrypted payload is truncated")
        return cls(
            nonce=raw[:NONCE_SIZE],
            tag=raw[NONCE_SIZE : NONCE_SIZE + TAG_SIZE],
            ciphertext=raw[NONCE_SIZE + TAG_SIZE :],
        )


def _check_key(key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise ValidationError(code="INVALID_KEY", message=f"key must be {KEY_SIZE} bytes, got {len(key)}")


def generate_key() -> bytes:
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def derive_key(passphrase: str, salt: bytes, iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
    """由口令派生 256 位密钥（PBKDF2-HMAC-SHA256）。"""

    if not passphrase:
        raise ValidationError(code="INVALID_PASSPHRASE", message="passphrase must not be empty")
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, iterations=iterations)
    return kdf.derive(passphrase.encode("utf-8"))


def seal(plaintext: bytes, key: bytes, associated_data: bytes = b"") -> EncryptedBlob:
    _check_key(key)
    nonce = os.urandom(NONCE_SIZE)
    # cryptography 返回 ciphertext‖tag
    sealed = AESGCM(key).encrypt(nonce, plaintext, associated_data or None)
    return EncryptedBlob(nonce=nonce, ciphertext=sealed[:-TAG_SIZE], tag=sealed[-TAG_SIZE:])


def open_blob(blob: EncryptedBlob, key: bytes, associated_data: bytes = b"") -> bytes:
    _check_key(key)
    if len(blob.nonce) != NONCE_SIZE or len(blob.tag) != TAG_SIZE:
        raise AuthenticationError("Malformed encrypted payload")
    try:
        return AESGCM(key).decrypt(blob.nonce, blob.ciphertext + blob.tag, associated_data or None)
    except InvalidTag:
        raise AuthenticationError()
