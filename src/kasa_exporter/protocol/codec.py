from __future__ import annotations

import struct
from typing import Final

_INITIAL_KEY: Final[int] = 171
_LENGTH_PREFIX: Final[struct.Struct] = struct.Struct(">I")

LENGTH_PREFIX_SIZE: Final[int] = _LENGTH_PREFIX.size
MAX_FRAME_BYTES: Final[int] = 64 * 1024


class FrameError(ValueError):
    """Raised when a length-prefixed frame header is invalid."""


def obscure(plaintext: bytes) -> bytes:
    """Obscure a payload the way Kasa firmware expects it on the wire.

    Autokey XOR: every output byte becomes the key for the next input byte.
    This is wire compatibility only, not confidentiality.
    """

    if not isinstance(plaintext, (bytes, bytearray, memoryview)):
        raise TypeError(f"plaintext must be bytes-like, got {type(plaintext).__name__}")
    key = _INITIAL_KEY
    out = bytearray(len(plaintext))
    for i, byte in enumerate(bytes(plaintext)):
        key ^= byte
        out[i] = key
    return bytes(out)


def reveal(ciphertext: bytes) -> bytes:
    """Inverse of `obscure`.

    There is no integrity check: garbled input yields garbled output and callers are expected
    to validate the result by decoding it.
    """

    if not isinstance(ciphertext, (bytes, bytearray, memoryview)):
        raise TypeError(f"ciphertext must be bytes-like, got {type(ciphertext).__name__}")
    key = _INITIAL_KEY
    out = bytearray(len(ciphertext))
    for i, byte in enumerate(bytes(ciphertext)):
        out[i] = key ^ byte
        key = byte
    return bytes(out)


def frame(payload: bytes) -> bytes:
    """Prefix `payload` with its 4-byte big-endian length (TCP framing)."""

    if len(payload) > MAX_FRAME_BYTES:
        raise FrameError(f"payload too large for a frame: {len(payload)} bytes")
    return _LENGTH_PREFIX.pack(len(payload)) + bytes(payload)


def read_frame_length(header: bytes) -> int:
    if len(header) != LENGTH_PREFIX_SIZE:
        raise FrameError(
            f"frame header must be {LENGTH_PREFIX_SIZE} bytes, got {len(header)} bytes"
        )
    (length,) = _LENGTH_PREFIX.unpack(header)
    if length > MAX_FRAME_BYTES:
        raise FrameError(f"frame length {length} exceeds limit of {MAX_FRAME_BYTES} bytes")
    return length
