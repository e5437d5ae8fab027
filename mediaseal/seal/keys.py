"""
Key wrapping — access policies and key-service adapters.

The content key is never stored in the clear. It is placed in a small JSON
binding payload together with the content identifier, and that payload is
wrapped by a key service under an access policy:

    binding = {"contentId": "0x...", "key": "<base64 AES key>"}
    wrap(binding, policy)   -> (ciphertext, digest)
    unwrap(ct, digest, policy) -> binding        # service enforces the policy

The threshold network that enforces policies in production is external;
LocalKeyService is an in-process stand-in for development, the CLI and tests.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from mediaseal import SEAL_KEY_SIZE, SEAL_NONCE_SIZE
from mediaseal.errors import AccessDenied, ContentIdentifierMismatch, InvalidInput

logger = logging.getLogger(__name__)

# Default contract-gated policy target
DEFAULT_POLICY_CHAIN = "baseSepolia"


@dataclass(frozen=True)
class AccessPolicy:
    """Opaque set of externally-evaluated access conditions.

    Attributes:
        conditions: Ordered condition dicts, passed through to the key service.
        chain: Chain label the conditions are evaluated against.
    """

    conditions: tuple = ()
    chain: str = DEFAULT_POLICY_CHAIN

    @classmethod
    def content_access(
        cls,
        contract_address: str,
        content_identifier: str,
        chain: str = DEFAULT_POLICY_CHAIN,
    ) -> AccessPolicy:
        """Contract-gated policy: canAccess(:userAddress, contentId) must be true."""
        condition = {
            "conditionType": "evmContract",
            "contractAddress": contract_address,
            "chain": chain,
            "functionName": "canAccess",
            "functionParams": [":userAddress", content_identifier.lower()],
            "functionAbi": {
                "type": "function",
                "name": "canAccess",
                "stateMutability": "view",
                "inputs": [
                    {"type": "address", "name": "user", "internalType": "address"},
                    {"type": "bytes32", "name": "contentId", "internalType": "bytes32"},
                ],
                "outputs": [{"type": "bool", "name": "", "internalType": "bool"}],
            },
            "returnValueTest": {"key": "", "comparator": "=", "value": "true"},
        }
        return cls(conditions=(condition,), chain=chain)

    def to_list(self) -> list[dict]:
        return [dict(c) for c in self.conditions]

    def fingerprint(self) -> bytes:
        """SHA-256 over the canonical JSON form of the policy."""
        canonical = json.dumps(
            {"chain": self.chain, "conditions": self.to_list()},
            sort_keys=True, separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).digest()

    def to_dict(self) -> dict[str, Any]:
        return {"chain": self.chain, "conditions": self.to_list()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccessPolicy:
        return cls(
            conditions=tuple(data.get("conditions", ())),
            chain=data.get("chain", DEFAULT_POLICY_CHAIN),
        )


@dataclass(frozen=True)
class WrappedKey:
    """Result of a key-service wrap call."""

    ciphertext: str
    digest: str


class KeyService(Protocol):
    """Key-management collaborator. Sole enforcement point for access."""

    async def wrap(self, payload: bytes, policy: AccessPolicy) -> WrappedKey: ...

    async def unwrap(self, ciphertext: str, digest: str, policy: AccessPolicy) -> bytes: ...


# ---------------------------------------------------------------------------
# Binding payload
# ---------------------------------------------------------------------------

def build_binding(content_identifier: str, key: bytes | bytearray) -> bytes:
    """Encode the {contentId, key} binding payload handed to wrap()."""
    return json.dumps(
        {
            "contentId": content_identifier.lower(),
            "key": base64.b64encode(bytes(key)).decode("ascii"),
        },
        separators=(",", ":"),
    ).encode("utf-8")


def parse_binding(payload: bytes, content_identifier: str) -> bytearray:
    """Verify a binding payload against the expected identifier; return the key.

    The returned key is a bytearray so the caller can zero it after use.

    Raises:
        ContentIdentifierMismatch: If the payload is bound to another identifier.
        InvalidInput: If the payload is not a well-formed binding.
    """
    try:
        parsed = json.loads(bytes(payload).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidInput(
            "Unwrapped payload is not valid JSON — key corruption or wrong policy"
        ) from e
    if not isinstance(parsed, dict) or not isinstance(parsed.get("key"), str):
        raise InvalidInput("Unwrapped payload missing key")

    bound = parsed.get("contentId")
    if not isinstance(bound, str) or bound.lower() != content_identifier.lower():
        raise ContentIdentifierMismatch(
            f"Content ID mismatch: payload bound to {bound}, requested {content_identifier}"
        )

    try:
        key = bytearray(base64.b64decode(parsed["key"], validate=True))
    except (ValueError, TypeError) as e:
        raise InvalidInput("Unwrapped key is not valid base64") from e
    if len(key) != SEAL_KEY_SIZE:
        size = len(key)
        zero(key)
        raise InvalidInput(f"Invalid key length: {size}, expected {SEAL_KEY_SIZE}")
    return key


def zero(buf: bytearray) -> None:
    """Best-effort in-place zeroing of key material."""
    for i in range(len(buf)):
        buf[i] = 0


# ---------------------------------------------------------------------------
# Local key service
# ---------------------------------------------------------------------------

def _import_aesgcm():
    from mediaseal.seal.crypto import _import_cryptography

    return _import_cryptography()


@dataclass
class LocalKeyService:
    """In-process key service.

    Wraps binding payloads with AES-256-GCM under a local master key, using the
    policy fingerprint as associated data so a wrapped key only unwraps under
    the exact policy it was created for. The digest is the SHA-256 of the
    binding payload. Access is decided by ``authorizer(policy)``.

    Usage:
        service = LocalKeyService.generate()
        wrapped = await service.wrap(binding, policy)
        binding = await service.unwrap(wrapped.ciphertext, wrapped.digest, policy)
    """

    master_key: bytes
    authorizer: Callable[[AccessPolicy], bool] = field(default=lambda policy: True)

    def __post_init__(self) -> None:
        if len(self.master_key) != SEAL_KEY_SIZE:
            raise InvalidInput(f"Master key must be {SEAL_KEY_SIZE} bytes")

    @classmethod
    def generate(cls, authorizer: Callable[[AccessPolicy], bool] | None = None) -> LocalKeyService:
        if authorizer is None:
            return cls(master_key=os.urandom(SEAL_KEY_SIZE))
        return cls(master_key=os.urandom(SEAL_KEY_SIZE), authorizer=authorizer)

    async def wrap(self, payload: bytes, policy: AccessPolicy) -> WrappedKey:
        AESGCM = _import_aesgcm()
        nonce = os.urandom(SEAL_NONCE_SIZE)
        sealed = AESGCM(self.master_key).encrypt(nonce, bytes(payload), policy.fingerprint())
        return WrappedKey(
            ciphertext=base64.b64encode(nonce + sealed).decode("ascii"),
            digest=hashlib.sha256(payload).hexdigest(),
        )

    async def unwrap(self, ciphertext: str, digest: str, policy: AccessPolicy) -> bytes:
        if not self.authorizer(policy):
            raise AccessDenied("Access policy not satisfied")

        AESGCM = _import_aesgcm()
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (ValueError, TypeError) as e:
            raise AccessDenied("Wrapped key is not valid base64") from e
        if len(raw) <= SEAL_NONCE_SIZE:
            raise AccessDenied("Wrapped key too short")

        try:
            payload = AESGCM(self.master_key).decrypt(
                raw[:SEAL_NONCE_SIZE], raw[SEAL_NONCE_SIZE:], policy.fingerprint()
            )
        except Exception:
            raise AccessDenied("Wrapped key does not unwrap under this policy")

        if not hmac.compare_digest(hashlib.sha256(payload).hexdigest(), digest):
            raise AccessDenied("Wrapped key digest mismatch")
        return payload
