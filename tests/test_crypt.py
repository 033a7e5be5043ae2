import pytest

from cloudsync.core.errors import OperationError
from cloudsync.sync.crypt import CHUNK_SIZE, Crypt, PassthroughCrypt

CRYPT = Crypt("correct horse", iterations=1000)


def test_text_is_randomized_but_decryptable():
    first = CRYPT.encrypt_text("Ünïcode name.txt")
    second = CRYPT.encrypt_text("Ünïcode name.txt")

    assert first != second
    assert CRYPT.decrypt_text(first) == "Ünïcode name.txt"
    assert CRYPT.decrypt_text(second) == "Ünïcode name.txt"


def test_same_passphrase_derives_same_key():
    token = CRYPT.encrypt_text("x")
    assert Crypt("correct horse", iterations=1000).decrypt_text(token) == "x"


def test_wrong_passphrase_is_reported():
    token = CRYPT.encrypt_text("x")
    with pytest.raises(OperationError, match="wrong passphrase"):
        Crypt("battery staple", iterations=1000).decrypt_text(token)


def test_stream_spanning_several_frames():
    data = bytes(range(256)) * (CHUNK_SIZE // 100)
    pieces = [data[i:i + 1000] for i in range(0, len(data), 1000)]

    encrypted = b"".join(CRYPT.encrypt_stream(pieces))
    # feed the ciphertext back in odd sized pieces
    split = [encrypted[i:i + 777] for i in range(0, len(encrypted), 777)]

    assert b"".join(CRYPT.decrypt_stream(split)) == data


def test_truncated_stream_is_rejected():
    encrypted = b"".join(CRYPT.encrypt_stream([b"hello world"]))
    with pytest.raises(OperationError, match="truncated"):
        list(CRYPT.decrypt_stream([encrypted[:-3]]))


def test_empty_passphrase_is_refused():
    with pytest.raises(ValueError):
        Crypt("")


def test_passthrough_is_identity():
    crypt = PassthroughCrypt()
    assert crypt.encrypt_text("a.txt") == "a.txt"
    assert b"".join(crypt.decrypt_stream(crypt.encrypt_stream([b"ab", b"c"]))) == b"abc"
