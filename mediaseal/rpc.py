"""
JSON-RPC transport for remote collaborators.

The storage network SDK, the threshold key service and the registration
signer run out of process (a sidecar speaking JSON-RPC 2.0 over HTTP). This
module provides the transport and thin adapters that expose them through the
StorageClient / KeyService / Registrar interfaces.

Zero external dependencies — uses stdlib urllib.request. Blocking calls are
moved off the event loop with asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Sequence

from mediaseal.errors import ProviderError, RemoteCallError
from mediaseal.registry import Receipt
from mediaseal.seal.keys import AccessPolicy, WrappedKey
from mediaseal.storage import Balance, UploadResult, is_provider_error

logger = logging.getLogger(__name__)

# JSON-RPC error code used by the sidecar for provider-class storage failures
PROVIDER_ERROR_CODE = -32010


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client using stdlib urllib.

    Usage:
        rpc = JsonRpcClient.from_env("MEDIASEAL_STORAGE")
        info = rpc.call("storage.accountInfo", {"signer": "0x..."})
    """

    def __init__(self, url: str, token: str = "", timeout: float = 60.0) -> None:
        if not url:
            raise ValueError("RPC URL cannot be empty")
        self.url = url
        self._token = token
        self.timeout = timeout
        self._id_counter = 0

    @classmethod
    def from_env(cls, prefix: str, timeout: float = 60.0) -> JsonRpcClient:
        """Create a client from <prefix>_RPC_URL and MEDIASEAL_RPC_TOKEN."""
        url = os.environ.get(f"{prefix}_RPC_URL", "")
        if not url:
            raise RemoteCallError(f"{prefix}_RPC_URL not set")
        return cls(url, os.environ.get("MEDIASEAL_RPC_TOKEN", ""), timeout)

    def call(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        """Execute a JSON-RPC call. Returns the 'result' field.

        Raises RemoteCallError on transport or RPC-level errors.
        """
        self._id_counter += 1
        payload = json.dumps({
            "jsonrpc": "2.0",
            "id": self._id_counter,
            "method": method,
            "params": params or {},
        }).encode()

        req = urllib.request.Request(
            self.url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        if self._token:
            req.add_header("Authorization", f"Bearer {self._token}")

        try:
            with urllib.request.urlopen(req, timeout=timeout or self.timeout) as resp:
                body = json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            try:
                body = json.loads(e.read().decode())
            except Exception:
                raise RemoteCallError(f"HTTP {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise RemoteCallError(f"Connection failed: {e.reason}") from e
        except Exception as e:
            raise RemoteCallError(f"RPC call failed: {e}") from e

        if not isinstance(body, dict):
            raise RemoteCallError("RPC response is not a JSON object")
        if body.get("error"):
            err = body["error"]
            if isinstance(err, dict):
                raise RemoteCallError(err.get("message", str(err)), err.get("code"), err.get("data"))
            raise RemoteCallError(str(err))

        return body.get("result")

    async def acall(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        """Run call() in a worker thread."""
        logger.debug("RPC %s", method)
        return await asyncio.to_thread(self.call, method, params, timeout)


def _as_provider_error(exc: RemoteCallError, provider_id: str | None = None) -> Exception:
    """Map a provider-class RPC error to ProviderError.

    The sidecar names the failing provider in the error's `data.providerId`
    when it fails before an upload context exists (data-set creation).
    """
    if exc.code == PROVIDER_ERROR_CODE or is_provider_error(exc):
        if isinstance(exc.data, dict) and exc.data.get("providerId") not in (None, ""):
            provider_id = str(exc.data["providerId"])
        return ProviderError(str(exc), provider_id)
    return exc


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@dataclass
class RemoteUploadContext:
    """Upload context held by the sidecar, addressed by context_id."""

    rpc: JsonRpcClient
    signer: str
    context_id: str
    provider_id: str
    dataset_owner: str
    reused: bool

    async def upload(self, data: bytes) -> UploadResult:
        try:
            result = await self.rpc.acall("storage.upload", {
                "signer": self.signer,
                "contextId": self.context_id,
                "bytesBase64": base64.b64encode(data).decode("ascii"),
            })
        except RemoteCallError as e:
            mapped = _as_provider_error(e, self.provider_id)
            if mapped is e:
                raise
            raise mapped from e
        return UploadResult(piece_id=str(result["pieceCid"]), size=int(result.get("size") or len(data)))


class RemoteStorageClient:
    """StorageClient backed by the storage sidecar, bound to one signer."""

    def __init__(self, rpc: JsonRpcClient, signer: str, with_cdn: bool = True) -> None:
        self.rpc = rpc
        self.signer = signer
        self.with_cdn = with_cdn

    async def account_balance(self) -> Balance:
        info = await self.rpc.acall("storage.accountInfo", {"signer": self.signer})
        return Balance(
            available=int(info.get("availableFunds", 0)),
            operator_approved=bool(info.get("operatorApproved", False)),
        )

    async def estimate_cost(self, size_bytes: int) -> int:
        result = await self.rpc.acall(
            "storage.estimateCost", {"signer": self.signer, "sizeBytes": size_bytes},
        )
        return int(result.get("required", 0))

    async def deposit(self, amount: int) -> str:
        result = await self.rpc.acall(
            "storage.deposit", {"signer": self.signer, "amount": str(amount)},
        )
        return str(result["txHash"])

    async def approve_operator(self) -> str:
        result = await self.rpc.acall("storage.approveOperator", {"signer": self.signer})
        return str(result["txHash"])

    async def create_upload_context(
        self,
        exclude_provider_ids: Sequence[str] = (),
        dataset_id: str | None = None,
    ) -> RemoteUploadContext:
        params: dict[str, Any] = {
            "signer": self.signer,
            "withCDN": self.with_cdn,
            "excludeProviderIds": list(exclude_provider_ids),
        }
        if dataset_id:
            params["dataSetId"] = dataset_id
        try:
            result = await self.rpc.acall("storage.createContext", params)
        except RemoteCallError as e:
            mapped = _as_provider_error(e)
            if mapped is e:
                raise
            raise mapped from e
        return RemoteUploadContext(
            rpc=self.rpc,
            signer=self.signer,
            context_id=str(result["contextId"]),
            provider_id=str(result.get("providerId", "")),
            dataset_owner=str(result.get("datasetOwner") or self.signer),
            reused=bool(result.get("reused", dataset_id is not None)),
        )


# ---------------------------------------------------------------------------
# Key service
# ---------------------------------------------------------------------------

class RemoteKeyService:
    """KeyService backed by the key sidecar (threshold network client)."""

    def __init__(self, rpc: JsonRpcClient) -> None:
        self.rpc = rpc

    async def wrap(self, payload: bytes, policy: AccessPolicy) -> WrappedKey:
        result = await self.rpc.acall("keys.wrap", {
            "dataBase64": base64.b64encode(payload).decode("ascii"),
            "policy": policy.to_dict(),
        })
        return WrappedKey(ciphertext=result["ciphertext"], digest=result["dataToEncryptHash"])

    async def unwrap(self, ciphertext: str, digest: str, policy: AccessPolicy) -> bytes:
        result = await self.rpc.acall("keys.unwrap", {
            "ciphertext": ciphertext,
            "dataToEncryptHash": digest,
            "policy": policy.to_dict(),
        })
        return base64.b64decode(result["dataBase64"])


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

class RemoteRegistrar:
    """Registrar that asks a remote signer to anchor (contentId, pieceId)."""

    def __init__(self, rpc: JsonRpcClient) -> None:
        self.rpc = rpc

    async def register(self, content_identifier: str, piece_id: str, metadata: dict[str, Any]) -> Receipt:
        result = await self.rpc.acall("content.register", {
            "contentId": content_identifier,
            "pieceCid": piece_id,
            "metadata": metadata,
        })
        if not isinstance(result, dict) or not result.get("success", True):
            error = result.get("error") if isinstance(result, dict) else result
            raise RemoteCallError(f"Content register failed: {error or 'unknown error'}")
        return Receipt(
            tx_hash=str(result["txHash"]),
            block_number=int(result.get("blockNumber") or 0),
        )
