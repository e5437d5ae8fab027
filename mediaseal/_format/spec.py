"""
Container Format Specification.

Layout:
    [4 bytes]  wrappedKeyCiphertextLen (u32)
    [N bytes]  wrappedKeyCiphertext    (UTF-8 text, opaque)
    [4 bytes]  wrappedKeyDigestLen     (u32)
    [M bytes]  wrappedKeyDigest        (UTF-8 text, opaque)
    [1 byte]   algorithm               (1 = AES-256-GCM)
    [1 byte]   nonceLen
    [K bytes]  nonce
    [4 bytes]  payloadLen (u32)        <- excludes trailing padding
    [payloadLen bytes] encrypted payload
    [optional trailing bytes]          <- ignored

Length Protocol:
    - Every length field must be non-zero
    - No length field may claim more bytes than remain in the buffer
    - The nonce length is always embedded, never inferred from the algorithm
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from mediaseal import ALGO_AES_GCM_256

# Length prefixes
U32 = struct.Struct(">I")
U8 = struct.Struct(">B")

# Smallest buffer that can hold the fixed-width fields
MIN_HEADER_SIZE = 10

# Largest nonce representable by the single-byte length prefix
MAX_NONCE_SIZE = 255

# Largest value of a u32 length field
MAX_U32 = 0xFFFFFFFF

# Algorithm tags the codec accepts (reject unknown tags instead of guessing)
RECOGNIZED_ALGORITHMS = frozenset({ALGO_AES_GCM_256})

ALGORITHM_NAMES = {
    ALGO_AES_GCM_256: "AES-256-GCM",
}


@dataclass(frozen=True)
class ContentHeader:
    """Parsed (or to-be-written) container header.

    Attributes:
        wrapped_key_ciphertext: Symmetric key wrapped by the key service.
        wrapped_key_digest: Digest returned alongside the wrapped key.
        algorithm: Encryption algorithm tag.
        nonce: AEAD nonce for this blob.
        payload_length: Exact encrypted payload length (excludes padding).
        payload_offset: Byte offset of the first payload byte (0 until encoded).
    """

    wrapped_key_ciphertext: str
    wrapped_key_digest: str
    algorithm: int
    nonce: bytes
    payload_length: int
    payload_offset: int = 0

    @property
    def algorithm_name(self) -> str:
        return ALGORITHM_NAMES.get(self.algorithm, f"unknown({self.algorithm})")

    @property
    def blob_size(self) -> int:
        """Header plus payload, excluding any padding."""
        return self.payload_offset + self.payload_length

    def to_dict(self) -> dict:
        return {
            "wrapped_key_ciphertext": self.wrapped_key_ciphertext,
            "wrapped_key_digest": self.wrapped_key_digest,
            "algorithm": self.algorithm,
            "algorithm_name": self.algorithm_name,
            "nonce": self.nonce.hex(),
            "payload_length": self.payload_length,
            "payload_offset": self.payload_offset,
        }


def header_size(ciphertext_len: int, digest_len: int, nonce_len: int) -> int:
    """Byte size of a header with the given variable-length field sizes."""
    return 4 + ciphertext_len + 4 + digest_len + 1 + 1 + nonce_len + 4
