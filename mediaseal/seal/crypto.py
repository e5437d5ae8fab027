"""
Content encryption — AES-256-GCM with a policy-wrapped content key.

Encryption (upload):
    1. Generate a random 256-bit key and a 12-byte nonce
    2. AES-GCM encrypt the plaintext
    3. Wrap {contentId, key} with the key service under the access policy
    4. Zero the raw key
    5. Encode header + ciphertext into a container blob

Decryption (playback):
    1. Decode the header (fail fast on malformed input)
    2. Reject algorithms this build does not implement
    3. Unwrap the binding payload (the key service enforces the policy)
    4. Check the binding's contentId against the requested one
    5. AES-GCM decrypt, zero the key

The `cryptography` package is lazily imported — a missing dependency produces
a clear error message.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from mediaseal import ALGO_AES_GCM_256, SEAL_KEY_SIZE, SEAL_NONCE_SIZE, SUPPORTED_ALGORITHMS
from mediaseal._format.reader import ContentReader
from mediaseal._format.writer import ContentWriter
from mediaseal.errors import DecryptionFailed, MalformedHeader, UnsupportedAlgorithm
from mediaseal.seal.addressing import validate_content_identifier
from mediaseal.seal.keys import AccessPolicy, KeyService, build_binding, parse_binding, zero

logger = logging.getLogger(__name__)


def _import_cryptography():
    """Lazily import AESGCM from the cryptography package.

    Raises ImportError with a helpful message if not installed.
    """
    try:
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        return AESGCM
    except ImportError:
        raise ImportError(
            "cryptography is required for content encryption. "
            "Install with: pip install cryptography"
        )


@dataclass(frozen=True)
class EncryptedContent:
    """Producer-side result of encrypt_content().

    Attributes:
        blob: Header + encrypted payload, ready to upload.
        wrapped_key_ciphertext: Policy-wrapped key, as embedded in the header.
        wrapped_key_digest: Digest returned by the key service.
        nonce: AES-GCM nonce used for the payload.
        policy: Access policy the key was wrapped under.
    """

    blob: bytes
    wrapped_key_ciphertext: str
    wrapped_key_digest: str
    nonce: bytes
    policy: AccessPolicy

    @property
    def size(self) -> int:
        return len(self.blob)


def seal_payload(plaintext: bytes, key: bytes | bytearray, nonce: bytes) -> bytes:
    """AES-256-GCM encrypt. Returns ciphertext with the 16-byte tag appended."""
    AESGCM = _import_cryptography()
    if len(key) != SEAL_KEY_SIZE:
        raise ValueError(f"Key must be {SEAL_KEY_SIZE} bytes")
    return AESGCM(key).encrypt(nonce, bytes(plaintext), None)


def open_payload(ciphertext: bytes, key: bytes | bytearray, nonce: bytes) -> bytes:
    """AES-256-GCM decrypt. Raises DecryptionFailed on authentication failure."""
    AESGCM = _import_cryptography()
    if len(key) != SEAL_KEY_SIZE:
        raise ValueError(f"Key must be {SEAL_KEY_SIZE} bytes")
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except Exception:
        raise DecryptionFailed("Decryption failed — wrong key or tampered ciphertext")


async def encrypt_content(
    plaintext: bytes,
    content_identifier: str,
    policy: AccessPolicy,
    key_service: KeyService,
) -> EncryptedContent:
    """Encrypt media bytes into a sealed container blob.

    The raw key never leaves this function unwrapped: only the policy-wrapped
    form and the AES-GCM ciphertext are returned.

    Args:
        plaintext: Raw media bytes.
        content_identifier: bytes32 hex id, bound into the wrapped payload.
        policy: Access policy handed to the key service.
        key_service: Wraps the binding payload.

    Returns:
        EncryptedContent with the combined blob.
    """
    content_identifier = validate_content_identifier(content_identifier)

    key = bytearray(os.urandom(SEAL_KEY_SIZE))
    nonce = os.urandom(SEAL_NONCE_SIZE)
    try:
        encrypted = seal_payload(plaintext, key, nonce)
        wrapped = await key_service.wrap(build_binding(content_identifier, key), policy)
    finally:
        zero(key)

    blob = ContentWriter.serialize(
        wrapped.ciphertext,
        wrapped.digest,
        ALGO_AES_GCM_256,
        nonce,
        encrypted,
    )
    logger.debug(
        "Sealed %d plaintext bytes for %s into %d-byte blob",
        len(plaintext), content_identifier[:10], len(blob),
    )
    return EncryptedContent(
        blob=blob,
        wrapped_key_ciphertext=wrapped.ciphertext,
        wrapped_key_digest=wrapped.digest,
        nonce=nonce,
        policy=policy,
    )


async def decrypt_content(
    blob: bytes,
    content_identifier: str,
    policy: AccessPolicy,
    key_service: KeyService,
) -> bytes:
    """Decrypt a sealed container blob.

    Raises:
        MalformedHeader: Header bytes violate the container format.
        UnsupportedAlgorithm: Header declares an algorithm this build lacks.
        ContentIdentifierMismatch: Unwrapped key is bound to another id.
        DecryptionFailed: AES-GCM authentication failed.
    """
    content_identifier = validate_content_identifier(content_identifier)

    header = ContentReader.parse(blob, strict=False)
    if header.algorithm not in SUPPORTED_ALGORITHMS:
        raise UnsupportedAlgorithm(header.algorithm)
    if len(header.nonce) != SEAL_NONCE_SIZE:
        raise MalformedHeader(
            f"AES-GCM nonce must be {SEAL_NONCE_SIZE} bytes, got {len(header.nonce)}"
        )
    encrypted = ContentReader.payload(blob, header)

    binding = await key_service.unwrap(
        header.wrapped_key_ciphertext, header.wrapped_key_digest, policy,
    )
    key = parse_binding(binding, content_identifier)
    try:
        return open_payload(encrypted, key, header.nonce)
    finally:
        zero(key)
