"""
On-chain registration — the (contentId, pieceId) join record.

The registration transaction is built and signed remotely; this module only
defines the interface and the metadata the pipeline sends with it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Protocol

from mediaseal import ALGO_AES_GCM_256, ALGO_PLAINTEXT

_TXHASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

# Metadata keys forwarded to the registrar
METADATA_KEYS = ("title", "artist", "album", "mbid", "ip_id", "content_type")


@dataclass(frozen=True)
class Receipt:
    """Registration transaction receipt."""

    tx_hash: str
    block_number: int

    @property
    def looks_valid(self) -> bool:
        return bool(_TXHASH_RE.match(self.tx_hash))


class Registrar(Protocol):
    """On-chain registration collaborator.

    Expected to be idempotent for a repeated (contentId, pieceId), or to
    reject duplicates cleanly.
    """

    async def register(self, content_identifier: str, piece_id: str, metadata: dict[str, Any]) -> Receipt: ...


def registration_metadata(
    job_metadata: dict[str, Any],
    *,
    encrypted: bool,
    track_identifier: str,
    dataset_owner: str | None,
) -> dict[str, Any]:
    """Build the metadata sent with a registration call."""
    meta = {k: job_metadata[k] for k in METADATA_KEYS if job_metadata.get(k)}
    meta["algorithm"] = ALGO_AES_GCM_256 if encrypted else ALGO_PLAINTEXT
    meta["track_identifier"] = track_identifier
    if dataset_owner:
        meta["dataset_owner"] = dataset_owner
    return meta
