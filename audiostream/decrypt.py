"""Transparent AES-128-CTR decryption of audio streams."""

from __future__ import annotations

import io
from typing import BinaryIO

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

AUDIO_AESIV = bytes(
    [
        0x72, 0xE0, 0x67, 0xFB, 0xDD, 0xCB, 0xCF, 0x77,
        0xEB, 0xE8, 0xBC, 0x64, 0x3F, 0x63, 0x0D, 0x93,
    ]
)

_BLOCK_SIZE = 16
_KEY_SIZE = 16
_COUNTER_MODULUS = 1 << 128


class AudioDecrypt(io.RawIOBase):
    """A readable stream that decrypts bytes from ``reader`` on the fly."""

    def __init__(self, key: bytes, reader: BinaryIO) -> None:
        super().__init__()
        key = bytes(key)
        if len(key) != _KEY_SIZE:
            raise ValueError(f"audio key must be {_KEY_SIZE} bytes, got {len(key)}")
        self._key = key
        self._reader = reader
        self._cipher = self._keystream_at(0)

    def _keystream_at(self, position: int):
        block, skip = divmod(position, _BLOCK_SIZE)
        counter = (int.from_bytes(AUDIO_AESIV, "big") + block) % _COUNTER_MODULUS
        cipher = Cipher(
            algorithms.AES(self._key), modes.CTR(counter.to_bytes(_BLOCK_SIZE, "big"))
        ).encryptor()
        if skip:
            cipher.update(bytes(skip))
        return cipher

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        try:
            return bool(self._reader.seekable())
        except AttributeError:
            return False

    def readinto(self, buffer) -> int | None:
        view = memoryview(buffer).cast("B")
        data = self._reader.read(len(view))
        if data is None:
            return None
        count = len(data)
        if count:
            view[:count] = self._cipher.update(data)
        return count

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        position = self._reader.seek(offset, whence)
        self._cipher = self._keystream_at(position)
        return position

    def tell(self) -> int:
        return self._reader.tell()