from __future__ import annotations

import base64
import hashlib
import struct
from typing import BinaryIO, Iterable, Iterator

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from cloudsync.core.errors import OperationError

CHUNK_SIZE = 1024 * 64
KDF_ITERATIONS = 480_000
_FRAME = struct.Struct(">I")


def read_chunks(fp: BinaryIO, size: int = CHUNK_SIZE) -> Iterator[bytes]:
    for chunk in iter(lambda: fp.read(size), b""):
        yield chunk


def _rechunk(chunks: Iterable[bytes], size: int) -> Iterator[bytes]:
    buf = bytearray()
    for chunk in chunks:
        buf.extend(chunk)
        while len(buf) >= size:
            yield bytes(buf[:size])
            del buf[:size]
    if buf:
        yield bytes(buf)


class Crypt:
    """Passphrase based encryption for names, metadata and content.

    Content is framed as a sequence of ``<4-byte length><fernet token>`` blocks
    so arbitrarily large files can be processed in constant memory.
    """

    def __init__(self, passphrase: str, iterations: int = KDF_ITERATIONS):
        if not passphrase:
            raise ValueError("passphrase must not be empty")
        # Deterministic salt: every run has to derive the same key.
        salt = hashlib.sha256(b"cloudsync:" + passphrase.encode("utf-8")).digest()[:16]
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
        self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8"))))

    def encrypt_text(self, text: str) -> str:
        return self._fernet.encrypt(text.encode("utf-8")).decode("ascii")

    def decrypt_text(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise OperationError(f"can't decrypt '{token[:40]}': wrong passphrase or corrupt data") from e

    def encrypt_stream(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in _rechunk(chunks, CHUNK_SIZE):
            token = self._fernet.encrypt(chunk)
            yield _FRAME.pack(len(token)) + token

    def decrypt_stream(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        buf = bytearray()
        for chunk in chunks:
            buf.extend(chunk)
            while len(buf) >= _FRAME.size:
                (length,) = _FRAME.unpack_from(buf)
                end = _FRAME.size + length
                if len(buf) < end:
                    break
                token = bytes(buf[_FRAME.size:end])
                del buf[:end]
                try:
                    yield self._fernet.decrypt(token)
                except InvalidToken as e:
                    raise OperationError("can't decrypt content block: wrong passphrase or corrupt data") from e
        if buf:
            raise OperationError("encrypted content is truncated")


class PassthroughCrypt:
    """Used with `noencryption`: names and data are stored as they are."""

    def encrypt_text(self, text: str) -> str:
        return text

    def decrypt_text(self, token: str) -> str:
        return token

    def encrypt_stream(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        yield from chunks

    def decrypt_stream(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        yield from chunks
