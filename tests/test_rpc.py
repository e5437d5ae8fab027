"""
Tests for the JSON-RPC transport and remote collaborator adapters.

All tests use mock HTTP / mock RPC — no sidecar required.
"""

from __future__ import annotations

import base64
import io
import json
import urllib.error
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mediaseal.errors import ProviderError, RemoteCallError
from mediaseal.registry import Receipt, registration_metadata
from mediaseal.rpc import (
    PROVIDER_ERROR_CODE,
    JsonRpcClient,
    RemoteKeyService,
    RemoteRegistrar,
    RemoteStorageClient,
)
from mediaseal.seal.keys import AccessPolicy
from mediaseal.storage import is_provider_error

SIGNER = "0x" + "22" * 20
TX_HASH = "0x" + "ee" * 32


def _http_response(body):
    resp = MagicMock()
    resp.read.return_value = json.dumps(body).encode()
    resp.__enter__.return_value = resp
    return resp


@pytest.fixture
def mock_rpc():
    rpc = MagicMock(spec=JsonRpcClient)
    rpc.acall = AsyncMock()
    return rpc


# ---------------------------------------------------------------------------
# TestJsonRpcClient
# ---------------------------------------------------------------------------

class TestJsonRpcClient:

    def test_empty_url_raises(self):
        with pytest.raises(ValueError):
            JsonRpcClient("")

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MEDIASEAL_STORAGE_RPC_URL", "http://127.0.0.1:8787")
        monkeypatch.setenv("MEDIASEAL_RPC_TOKEN", "tok")
        rpc = JsonRpcClient.from_env("MEDIASEAL_STORAGE")
        assert rpc.url == "http://127.0.0.1:8787"

    def test_from_env_missing_url(self, monkeypatch):
        monkeypatch.delenv("MEDIASEAL_KEYS_RPC_URL", raising=False)
        with pytest.raises(RemoteCallError, match="not set"):
            JsonRpcClient.from_env("MEDIASEAL_KEYS")

    def test_call_payload_and_auth(self):
        rpc = JsonRpcClient("http://sidecar", token="tok")
        with patch("urllib.request.urlopen", return_value=_http_response({"result": {"ok": 1}})) as urlopen:
            assert rpc.call("storage.accountInfo", {"signer": SIGNER}) == {"ok": 1}

        req = urlopen.call_args.args[0]
        body = json.loads(req.data)
        assert body["jsonrpc"] == "2.0"
        assert body["method"] == "storage.accountInfo"
        assert body["params"] == {"signer": SIGNER}
        assert req.get_header("Authorization") == "Bearer tok"

    def test_rpc_error(self):
        rpc = JsonRpcClient("http://sidecar")
        body = {"error": {"code": PROVIDER_ERROR_CODE, "message": "add pieces failed"}}
        with patch("urllib.request.urlopen", return_value=_http_response(body)):
            with pytest.raises(RemoteCallError) as exc_info:
                rpc.call("storage.upload")
        assert exc_info.value.code == PROVIDER_ERROR_CODE

    def test_rpc_error_data_kept(self):
        rpc = JsonRpcClient("http://sidecar")
        body = {"error": {
            "code": PROVIDER_ERROR_CODE,
            "message": "Failed to create data set",
            "data": {"providerId": "5"},
        }}
        with patch("urllib.request.urlopen", return_value=_http_response(body)):
            with pytest.raises(RemoteCallError) as exc_info:
                rpc.call("storage.createContext")
        assert exc_info.value.data == {"providerId": "5"}

    def test_http_error_with_json_body(self):
        rpc = JsonRpcClient("http://sidecar")
        payload = json.dumps({"error": {"code": -32000, "message": "bad signer"}}).encode()
        err = urllib.error.HTTPError("http://sidecar", 500, "ISE", {}, io.BytesIO(payload))
        with patch("urllib.request.urlopen", side_effect=err):
            with pytest.raises(RemoteCallError, match="bad signer"):
                rpc.call("storage.deposit")

    def test_connection_failure(self):
        rpc = JsonRpcClient("http://sidecar")
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with pytest.raises(RemoteCallError, match="Connection failed"):
                rpc.call("storage.accountInfo")

    @pytest.mark.asyncio
    async def test_acall(self):
        rpc = JsonRpcClient("http://sidecar")
        with patch("urllib.request.urlopen", return_value=_http_response({"result": 7})):
            assert await rpc.acall("storage.estimateCost") == 7


# ---------------------------------------------------------------------------
# TestRemoteStorageClient
# ---------------------------------------------------------------------------

class TestRemoteStorageClient:

    @pytest.mark.asyncio
    async def test_account_balance(self, mock_rpc):
        mock_rpc.acall.return_value = {"availableFunds": "5000", "operatorApproved": True}
        balance = await RemoteStorageClient(mock_rpc, SIGNER).account_balance()
        assert balance.available == 5000
        assert balance.operator_approved

    @pytest.mark.asyncio
    async def test_deposit_sends_string_amount(self, mock_rpc):
        mock_rpc.acall.return_value = {"txHash": TX_HASH}
        assert await RemoteStorageClient(mock_rpc, SIGNER).deposit(10**18) == TX_HASH
        method, params = mock_rpc.acall.call_args.args
        assert method == "storage.deposit"
        assert params["amount"] == str(10**18)

    @pytest.mark.asyncio
    async def test_create_context_and_upload(self, mock_rpc):
        mock_rpc.acall.side_effect = [
            {"contextId": "ctx1", "providerId": "7", "datasetOwner": "0xowner", "reused": False},
            {"pieceCid": "bagaPIECE", "size": 3},
        ]
        client = RemoteStorageClient(mock_rpc, SIGNER, with_cdn=False)
        ctx = await client.create_upload_context(exclude_provider_ids=["3"])
        assert ctx.provider_id == "7"
        assert not ctx.reused
        result = await ctx.upload(b"abc")
        assert result.piece_id == "bagaPIECE"

        create_params = mock_rpc.acall.call_args_list[0].args[1]
        assert create_params["excludeProviderIds"] == ["3"]
        assert create_params["withCDN"] is False
        upload_params = mock_rpc.acall.call_args_list[1].args[1]
        assert base64.b64decode(upload_params["bytesBase64"]) == b"abc"

    @pytest.mark.asyncio
    async def test_dataset_id_marks_reuse(self, mock_rpc):
        mock_rpc.acall.return_value = {"contextId": "ctx1", "providerId": "7"}
        ctx = await RemoteStorageClient(mock_rpc, SIGNER).create_upload_context(dataset_id="12")
        assert ctx.reused
        assert ctx.dataset_owner == SIGNER
        assert mock_rpc.acall.call_args.args[1]["dataSetId"] == "12"

    @pytest.mark.asyncio
    async def test_provider_error_mapped(self, mock_rpc):
        mock_rpc.acall.side_effect = [
            {"contextId": "ctx1", "providerId": "7"},
            RemoteCallError("whatever", PROVIDER_ERROR_CODE),
        ]
        ctx = await RemoteStorageClient(mock_rpc, SIGNER).create_upload_context()
        with pytest.raises(ProviderError) as exc_info:
            await ctx.upload(b"abc")
        assert exc_info.value.provider_id == "7"
        assert is_provider_error(exc_info.value)

    @pytest.mark.asyncio
    async def test_context_creation_failure_names_provider(self, mock_rpc):
        mock_rpc.acall.side_effect = RemoteCallError(
            "Failed to create data set", PROVIDER_ERROR_CODE, {"providerId": 5},
        )
        with pytest.raises(ProviderError) as exc_info:
            await RemoteStorageClient(mock_rpc, SIGNER).create_upload_context()
        assert exc_info.value.provider_id == "5"

    @pytest.mark.asyncio
    async def test_context_creation_failure_without_provider(self, mock_rpc):
        mock_rpc.acall.side_effect = RemoteCallError("Failed to create data set", PROVIDER_ERROR_CODE)
        with pytest.raises(ProviderError) as exc_info:
            await RemoteStorageClient(mock_rpc, SIGNER).create_upload_context()
        assert exc_info.value.provider_id is None

    @pytest.mark.asyncio
    async def test_other_errors_pass_through(self, mock_rpc):
        mock_rpc.acall.side_effect = [
            {"contextId": "ctx1", "providerId": "7"},
            RemoteCallError("signer locked", -32000),
        ]
        ctx = await RemoteStorageClient(mock_rpc, SIGNER).create_upload_context()
        with pytest.raises(RemoteCallError):
            await ctx.upload(b"abc")


# ---------------------------------------------------------------------------
# TestRemoteKeyService / TestRemoteRegistrar
# ---------------------------------------------------------------------------

class TestRemoteKeyService:

    @pytest.mark.asyncio
    async def test_wrap(self, mock_rpc):
        mock_rpc.acall.return_value = {"ciphertext": "ct", "dataToEncryptHash": "hash"}
        wrapped = await RemoteKeyService(mock_rpc).wrap(b"binding", AccessPolicy())
        assert (wrapped.ciphertext, wrapped.digest) == ("ct", "hash")
        params = mock_rpc.acall.call_args.args[1]
        assert base64.b64decode(params["dataBase64"]) == b"binding"
        assert params["policy"] == AccessPolicy().to_dict()

    @pytest.mark.asyncio
    async def test_unwrap(self, mock_rpc):
        mock_rpc.acall.return_value = {"dataBase64": base64.b64encode(b"binding").decode()}
        assert await RemoteKeyService(mock_rpc).unwrap("ct", "hash", AccessPolicy()) == b"binding"


class TestRemoteRegistrar:

    @pytest.mark.asyncio
    async def test_register(self, mock_rpc):
        mock_rpc.acall.return_value = {"success": True, "txHash": TX_HASH, "blockNumber": 99}
        receipt = await RemoteRegistrar(mock_rpc).register("0x" + "aa" * 32, "bagaP", {"algorithm": 1})
        assert receipt == Receipt(TX_HASH, 99)
        assert receipt.looks_valid

    @pytest.mark.asyncio
    async def test_register_failure(self, mock_rpc):
        mock_rpc.acall.return_value = {"success": False, "error": "nonce too low"}
        with pytest.raises(RemoteCallError, match="nonce too low"):
            await RemoteRegistrar(mock_rpc).register("0x" + "aa" * 32, "bagaP", {})

    def test_registration_metadata(self):
        meta = registration_metadata(
            {"title": "Song", "artist": "", "extra": "dropped"},
            encrypted=True,
            track_identifier="0x" + "11" * 32,
            dataset_owner="0xowner",
        )
        assert meta == {
            "title": "Song",
            "algorithm": 1,
            "track_identifier": "0x" + "11" * 32,
            "dataset_owner": "0xowner",
        }
