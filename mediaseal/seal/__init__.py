"""
Seal — content encryption, key wrapping and content addressing.

Provides:
    - encrypt_content / decrypt_content — AES-256-GCM with a policy-wrapped key
      (requires `cryptography`)
    - AccessPolicy / KeyService / LocalKeyService — key-service interface
    - compute_content_identifier / compute_track_identifier — keccak256 ids
      (requires `eth-abi` and `eth-utils`)
"""

from mediaseal.seal.addressing import (
    compute_content_identifier,
    compute_track_identifier,
    infer_track_metadata,
)
from mediaseal.seal.crypto import EncryptedContent, decrypt_content, encrypt_content
from mediaseal.seal.keys import AccessPolicy, KeyService, LocalKeyService, WrappedKey

__all__ = [
    "AccessPolicy",
    "EncryptedContent",
    "KeyService",
    "LocalKeyService",
    "WrappedKey",
    "compute_content_identifier",
    "compute_track_identifier",
    "decrypt_content",
    "encrypt_content",
    "infer_track_metadata",
]
