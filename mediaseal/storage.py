"""
Storage network interface — balances, upload contexts, gateway URLs.

The storage network client (balance/deposit machinery, provider selection,
dataset management) is external. This module defines the surface the upload
pipeline needs, the provider-error classification used for fallback, the
gateway URL rule, and a per-signer client cache.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

from mediaseal import (
    DEFAULT_GATEWAY_URL,
    FILBEAM_HOST_CALIBRATION,
    FILBEAM_HOST_MAINNET,
    NATIVE_PIECE_PREFIXES,
)
from mediaseal.errors import InvalidInput, ProviderError

logger = logging.getLogger(__name__)

NETWORKS = frozenset({"mainnet", "calibration"})

# Failure messages that identify a provider-side problem (retry elsewhere)
_PROVIDER_ERROR_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"fail(ed)? to create (a )?data ?set",
        r"data ?set creation",
        r"add ?pieces? fail",
        r"fail(ed)? to add ?pieces?",
        r"insufficient provider funds",
        r"provider .*insufficient funds",
    )
]


@dataclass(frozen=True)
class Balance:
    """Storage account funds, in the token's smallest unit."""

    available: int
    operator_approved: bool = True


@dataclass(frozen=True)
class UploadResult:
    piece_id: str
    size: int = 0


class UploadContext(Protocol):
    """A provider/dataset session returned by create_upload_context()."""

    provider_id: str
    dataset_owner: str
    reused: bool  # pinned to an existing dataset

    async def upload(self, data: bytes) -> UploadResult: ...


class StorageClient(Protocol):
    """Storage network collaborator."""

    async def account_balance(self) -> Balance: ...

    async def estimate_cost(self, size_bytes: int) -> int: ...

    async def deposit(self, amount: int) -> str: ...

    async def approve_operator(self) -> str: ...

    async def create_upload_context(
        self,
        exclude_provider_ids: Sequence[str] = (),
        dataset_id: str | None = None,
    ) -> UploadContext: ...


def is_provider_error(exc: BaseException) -> bool:
    """True if the failure is provider-specific and worth retrying elsewhere."""
    if isinstance(exc, ProviderError):
        return True
    message = str(exc)
    return any(p.search(message) for p in _PROVIDER_ERROR_PATTERNS)


def provider_of(exc: BaseException) -> str | None:
    return getattr(exc, "provider_id", None)


# ---------------------------------------------------------------------------
# Gateway URLs
# ---------------------------------------------------------------------------

def is_native_piece_id(piece_id: str) -> bool:
    return piece_id.startswith(NATIVE_PIECE_PREFIXES)


def gateway_url_for(
    piece_id: str,
    dataset_owner: str | None = None,
    network: str = "mainnet",
    gateway_base: str | None = None,
) -> str:
    """Build the retrieval URL for a piece. Pure string formatting.

    Native Filecoin piece ids are served from the dataset owner's CDN host;
    anything else resolves through the generic gateway.
    """
    if not piece_id or not isinstance(piece_id, str):
        raise InvalidInput(f"Invalid piece id: {piece_id!r}")
    if is_native_piece_id(piece_id):
        if not dataset_owner or not dataset_owner.strip():
            raise InvalidInput("Missing dataset owner for a Filecoin piece id")
        if network not in NETWORKS:
            raise InvalidInput(f"Unknown network: {network!r}")
        host = FILBEAM_HOST_CALIBRATION if network == "calibration" else FILBEAM_HOST_MAINNET
        return f"https://{dataset_owner.strip()}.{host}/{piece_id}"

    base = (gateway_base or DEFAULT_GATEWAY_URL).rstrip("/")
    return f"{base}/resolve/{piece_id}"


@dataclass(frozen=True)
class ContentLocator:
    """Where a piece can be fetched from."""

    piece_id: str
    dataset_owner: str | None = None
    network: str = "mainnet"
    gateway_url: str | None = None

    def url(self) -> str:
        return gateway_url_for(self.piece_id, self.dataset_owner, self.network, self.gateway_url)


# ---------------------------------------------------------------------------
# Client cache
# ---------------------------------------------------------------------------

@dataclass
class StorageClientCache:
    """One long-lived storage client per signer identity, created lazily.

    Reuses the client's own connection and provider-selection caches across
    jobs. Calls through it are still serialized by the single-worker queue.
    """

    factory: Callable[[str], Any]
    _clients: dict[str, Any] = field(default_factory=dict)

    def get(self, signer: str) -> Any:
        key = signer.lower()
        client = self._clients.get(key)
        if client is None:
            logger.debug("Creating storage client for %s", signer)
            client = self.factory(signer)
            self._clients[key] = client
        return client

    def evict(self, signer: str) -> None:
        self._clients.pop(signer.lower(), None)

    def __len__(self) -> int:
        return len(self._clients)
