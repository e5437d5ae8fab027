"""
Reader — bounds-checked parser for container blobs.

Security features:
  - Every length field is checked against the remaining buffer before use
    (no out-of-bounds slicing, truncated blobs always fail)
  - Zero lengths are rejected for every variable-length field
  - Unknown algorithm tags are rejected rather than guessed
  - Trailing padding after the declared payload is ignored
"""

from __future__ import annotations

from mediaseal._format.spec import (
    MIN_HEADER_SIZE, RECOGNIZED_ALGORITHMS, U32,
    ContentHeader,
)
from mediaseal.errors import MalformedHeader


class _Cursor:
    """Forward-only view over a buffer that refuses to read past the end."""

    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self.offset

    def take(self, n: int, what: str) -> bytes:
        if n > self.remaining:
            raise MalformedHeader(
                f"Blob truncated in {what}: need {n} bytes, {self.remaining} available"
            )
        chunk = self._data[self.offset:self.offset + n].tobytes()
        self.offset += n
        return chunk

    def u32(self, what: str) -> int:
        return U32.unpack(self.take(4, what))[0]

    def u8(self, what: str) -> int:
        return self.take(1, what)[0]


class ContentReader:
    """
    Container blob parser.

    Usage:
        header = ContentReader.parse(blob)
        encrypted = ContentReader.payload(blob, header)
    """

    @staticmethod
    def parse(data: bytes, strict: bool = True) -> ContentHeader:
        """Parse the header of a blob. Does not decrypt.

        With strict=False, an unrecognized algorithm tag is returned as-is so
        that a caller can report it with its own error type.

        Raises MalformedHeader on any format violation.
        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise MalformedHeader(f"Expected bytes, got {type(data).__name__}")
        if len(data) < MIN_HEADER_SIZE:
            raise MalformedHeader(
                f"Blob too small to contain a valid header ({len(data)} bytes)"
            )

        cur = _Cursor(bytes(data))

        ct_len = cur.u32("wrapped key length")
        if ct_len == 0:
            raise MalformedHeader("Invalid wrapped key length: 0")
        ct_bytes = cur.take(ct_len, "wrapped key")

        digest_len = cur.u32("digest length")
        if digest_len == 0:
            raise MalformedHeader("Invalid digest length: 0")
        digest_bytes = cur.take(digest_len, "digest")

        algorithm = cur.u8("algorithm")
        if strict and algorithm not in RECOGNIZED_ALGORITHMS:
            raise MalformedHeader(f"Unknown algorithm tag: {algorithm}")

        nonce_len = cur.u8("nonce length")
        if nonce_len == 0:
            raise MalformedHeader("Invalid nonce length: 0")
        nonce = cur.take(nonce_len, "nonce")

        payload_len = cur.u32("payload length")
        if payload_len == 0:
            raise MalformedHeader("Invalid payload length: 0")
        if payload_len > cur.remaining:
            raise MalformedHeader(
                f"Invalid payload length: {payload_len} (available: {cur.remaining})"
            )

        try:
            wrapped_key = ct_bytes.decode("utf-8")
            digest = digest_bytes.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedHeader(f"Header text field is not UTF-8: {e}") from e

        return ContentHeader(
            wrapped_key_ciphertext=wrapped_key,
            wrapped_key_digest=digest,
            algorithm=algorithm,
            nonce=nonce,
            payload_length=payload_len,
            payload_offset=cur.offset,
        )

    @staticmethod
    def payload(data: bytes, header: ContentHeader) -> bytes:
        """Slice exactly payload_length bytes, ignoring trailing padding."""
        end = header.payload_offset + header.payload_length
        if header.payload_offset <= 0 or end > len(data):
            raise MalformedHeader(
                f"Header payload range {header.payload_offset}..{end} "
                f"exceeds blob of {len(data)} bytes"
            )
        return bytes(data[header.payload_offset:end])

    @classmethod
    def split(cls, data: bytes, strict: bool = True) -> tuple[ContentHeader, bytes]:
        """Parse and return (header, encrypted payload)."""
        header = cls.parse(data, strict=strict)
        return header, cls.payload(data, header)


def decode(data: bytes, strict: bool = True) -> ContentHeader:
    """Decode a container header. See ContentReader.parse."""
    return ContentReader.parse(data, strict=strict)
