"""会话文件编解码。

文件格式：

    MAGIC(4) b"ECHM" | version(1) | algorithm(1) | body

- algorithm = 0（明文）：body = 4 字节大端长度 + UTF-8 JSON。
- algorithm = 1（AES-256-GCM）：body = EncryptedBlob.to_bytes()，
  明文同样是 JSON，文件头 6 字节作为附加认证数据参与校验。
"""

import json
import struct
from typing import Optional

from echomind.domain.conversation import ConversationState
from echomind.domain.exceptions import StoreError
from echomind.infrastructure.security.sealing import EncryptedBlob, open_blob, seal

MAGIC = b"ECHM"
FORMAT_VERSION = 1
ALG_PLAINTEXT = 0
ALG_AES256_GCM = 1

_HEADER = struct.Struct(">4sBB")
_LENGTH = struct.Struct(">I")


def _header(algorithm: int) -> bytes:
    return _HEADER.pack(MAGIC, FORMAT_VERSION, algorithm)


def encode_state(state: ConversationState, key: Optional[bytes] = None) -> bytes:
    payload = json.dumps(state.to_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    if key is None:
        return _header(ALG_PLAINTEXT) + _LENGTH.pack(len(payload)) + payload
    header = _header(ALG_AES256_GCM)
    return header + seal(payload, key, associated_data=header).to_bytes()


def decode_state(raw: bytes, key: Optional[bytes] = None, session_id: str = "") -> ConversationState:
    """解析会话文件内容。

    Raises:
        StoreError: 文件头不合法、格式版本未知、加密模式与 key 不匹配或 JSON 损坏。
        AuthenticationError: 密钥错误或密文被篡改。
    """

    if len(raw) < _HEADER.size:
        raise StoreError(code="STORE_READ_ERROR", message=f"session file too short ({len(raw)} bytes)", session_id=session_id)
    magic, version, algorithm = _HEADER.unpack_from(raw)
    if magic != MAGIC:
        raise StoreError(code="STORE_READ_ERROR", message="not an echomind session file", session_id=session_id)
    if version != FORMAT_VERSION:
        raise StoreError(code="STORE_READ_ERROR", message=f"unsupported session format version {version}", session_id=session_id)

    header, body = raw[: _HEADER.size], raw[_HEADER.size :]
    if algorithm == ALG_PLAINTEXT:
        if key is not None:
            raise StoreError(
                code="STORE_READ_ERROR",
                message="session file is not encrypted but the store requires encryption",
                session_id=session_id,
            )
        if len(body) < _LENGTH.size:
            raise StoreError(code="STORE_READ_ERROR", message="truncated session file", session_id=session_id)
        (length,) = _LENGTH.unpack_from(body)
        payload = body[_LENGTH.size :]
        if len(payload) != length:
            raise StoreError(
                code="STORE_READ_ERROR",
                message=f"length mismatch: header says {length}, found {len(payload)}",
                session_id=session_id,
            )
    elif algorithm == ALG_AES256_GCM:
        if key is None:
            raise StoreError(
                code="STORE_READ_ERROR",
                message="session file is encrypted; a key is required",
                session_id=session_id,
            )
        payload = open_blob(EncryptedBlob.from_bytes(body), key, associated_data=header)
    else:
        raise StoreError(code="STORE_READ_ERROR", message=f"unknown algorithm id {algorithm}", session_id=session_id)

    try:
        return ConversationState.from_dict(json.loads(payload.decode("utf-8")))
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        raise StoreError(code="STORE_READ_ERROR", message=f"corrupt session payload: {e}", session_id=session_id)
