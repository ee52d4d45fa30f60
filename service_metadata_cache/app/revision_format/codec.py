"""
Compression helpers for cached metadata.

Each format's metadata is stored as zlib-compressed UTF-8. Backends that can
only hold text receive the compressed bytes base64 encoded.
"""

import base64
import binascii
import zlib

from shared.errors import SerializationError

COMPRESSION_LEVEL = 6


def compress(text: str) -> bytes:
    """Compress metadata text."""
    return zlib.compress(text.encode("utf-8"), level=COMPRESSION_LEVEL)


def decompress(data: bytes) -> str:
    """Inverse of :func:`compress`."""
    return zlib.decompress(data).decode("utf-8")


def to_text(data: bytes) -> str:
    """Encode compressed bytes as storable text."""
    return base64.b64encode(data).decode("ascii")


def from_text(text: str) -> bytes:
    """Decode text produced by :func:`to_text`."""
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise SerializationError("Stored metadata is not valid base64", {"error": str(e)})
