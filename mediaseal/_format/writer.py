"""
Writer — serializes a header and encrypted payload into a container blob.

Single pass: every variable-length field is encoded first so that the total
size is known, then the blob is assembled into one buffer.
"""

from __future__ import annotations

import io

from mediaseal._format.spec import (
    MAX_NONCE_SIZE, MAX_U32, RECOGNIZED_ALGORITHMS, U32, U8,
    ContentHeader, header_size,
)
from mediaseal.errors import MalformedHeader


class ContentWriter:

    @staticmethod
    def serialize(
        wrapped_key_ciphertext: str,
        wrapped_key_digest: str,
        algorithm: int,
        nonce: bytes,
        payload: bytes,
    ) -> bytes:
        """Serialize header fields + payload to bytes. Pure.

        Raises MalformedHeader for any field the reader would reject, so a
        writer never produces an undecodable blob.
        """
        ct_bytes = wrapped_key_ciphertext.encode("utf-8")
        digest_bytes = wrapped_key_digest.encode("utf-8")

        if not ct_bytes:
            raise MalformedHeader("Wrapped key ciphertext must not be empty")
        if not digest_bytes:
            raise MalformedHeader("Wrapped key digest must not be empty")
        if algorithm not in RECOGNIZED_ALGORITHMS:
            raise MalformedHeader(f"Unknown algorithm tag: {algorithm}")
        if not 0 < len(nonce) <= MAX_NONCE_SIZE:
            raise MalformedHeader(
                f"Nonce length must be 1-{MAX_NONCE_SIZE} bytes, got {len(nonce)}"
            )
        if not payload:
            raise MalformedHeader("Encrypted payload must not be empty")
        for label, size in (
            ("ciphertext", len(ct_bytes)),
            ("digest", len(digest_bytes)),
            ("payload", len(payload)),
        ):
            if size > MAX_U32:
                raise MalformedHeader(f"{label} too large for u32 length: {size}")

        out = io.BytesIO()
        out.write(U32.pack(len(ct_bytes)))
        out.write(ct_bytes)
        out.write(U32.pack(len(digest_bytes)))
        out.write(digest_bytes)
        out.write(U8.pack(algorithm))
        out.write(U8.pack(len(nonce)))
        out.write(nonce)
        out.write(U32.pack(len(payload)))
        out.write(payload)
        return out.getvalue()

    @classmethod
    def serialize_header(cls, header: ContentHeader, payload: bytes) -> bytes:
        """Serialize using an existing header; its payload_length must match."""
        if header.payload_length != len(payload):
            raise MalformedHeader(
                f"Header declares {header.payload_length} payload bytes, "
                f"got {len(payload)}"
            )
        return cls.serialize(
            header.wrapped_key_ciphertext,
            header.wrapped_key_digest,
            header.algorithm,
            header.nonce,
            payload,
        )


def encode(header: ContentHeader, payload: bytes) -> bytes:
    """Encode a header and its encrypted payload into a container blob."""
    return ContentWriter.serialize_header(header, payload)


def build_header(
    wrapped_key_ciphertext: str,
    wrapped_key_digest: str,
    algorithm: int,
    nonce: bytes,
    payload: bytes,
) -> ContentHeader:
    """Construct the header that serialize() would write for these fields."""
    offset = header_size(
        len(wrapped_key_ciphertext.encode("utf-8")),
        len(wrapped_key_digest.encode("utf-8")),
        len(nonce),
    )
    return ContentHeader(
        wrapped_key_ciphertext=wrapped_key_ciphertext,
        wrapped_key_digest=wrapped_key_digest,
        algorithm=algorithm,
        nonce=bytes(nonce),
        payload_length=len(payload),
        payload_offset=offset,
    )
