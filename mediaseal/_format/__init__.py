"""
Binary container codec for sealed media blobs.

Format (big-endian):
    [4] wrappedKeyLen  [N] wrappedKey (UTF-8)
    [4] digestLen      [M] digest (UTF-8)
    [1] algorithm      [1] nonceLen  [K] nonce
    [4] payloadLen     [payloadLen] encrypted payload
    [...] optional trailing padding (ignored)

Pure transforms — no I/O, no decryption.
"""

from mediaseal._format.spec import ContentHeader, MIN_HEADER_SIZE, header_size
from mediaseal._format.writer import ContentWriter, encode
from mediaseal._format.reader import ContentReader, decode

__all__ = [
    "ContentHeader",
    "ContentReader",
    "ContentWriter",
    "MIN_HEADER_SIZE",
    "decode",
    "encode",
    "header_size",
]
