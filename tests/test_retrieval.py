"""
Tests for retrieval — gateway URLs, fetch errors, fetch-and-decrypt.

HTTP is mocked — no gateway required.
"""

from __future__ import annotations

import io
import urllib.error
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mediaseal.errors import (
    ContentIdentifierMismatch,
    DecryptionFailed,
    FetchFailed,
    InvalidInput,
    MalformedHeader,
)
from mediaseal.retrieval import RetrievalPipeline, http_get, resolve_url
from mediaseal.seal.addressing import compute_content_identifier
from mediaseal.seal.keys import AccessPolicy
from mediaseal.storage import ContentLocator, StorageClientCache, gateway_url_for

try:
    import cryptography  # noqa: F401
    HAS_CRYPTO = True
except ImportError:
    HAS_CRYPTO = False

skip_no_crypto = pytest.mark.skipif(
    not HAS_CRYPTO,
    reason="cryptography package not installed",
)

OWNER = "0x" + "22" * 20
CONTENT_ID = compute_content_identifier("0x" + "11" * 32, OWNER)


def fetcher_returning(data):
    return AsyncMock(return_value=data)


# ---------------------------------------------------------------------------
# TestGatewayUrl
# ---------------------------------------------------------------------------

class TestGatewayUrl:

    def test_native_piece_mainnet(self):
        assert gateway_url_for("bagaPIECE", OWNER) == f"https://{OWNER}.filbeam.io/bagaPIECE"

    def test_native_piece_calibration(self):
        url = gateway_url_for("bafyPIECE", OWNER, network="calibration")
        assert url == f"https://{OWNER}.calibration.filbeam.io/bafyPIECE"

    def test_cid_v0_is_native(self):
        assert gateway_url_for("QmHash", OWNER).endswith(".filbeam.io/QmHash")

    def test_native_requires_owner(self):
        with pytest.raises(InvalidInput, match="dataset owner"):
            gateway_url_for("bagaPIECE", "  ")

    def test_non_native_uses_gateway(self):
        assert gateway_url_for("ar-123", gateway_base="https://gw.example/") == (
            "https://gw.example/resolve/ar-123"
        )

    def test_default_gateway(self):
        assert gateway_url_for("xyz") == "https://gateway.s3-node-1.load.network/resolve/xyz"

    def test_unknown_network(self):
        with pytest.raises(InvalidInput, match="network"):
            gateway_url_for("bagaPIECE", OWNER, network="devnet")

    def test_empty_piece(self):
        with pytest.raises(InvalidInput):
            gateway_url_for("", OWNER)

    def test_locator(self):
        locator = ContentLocator("bagaPIECE", OWNER, "calibration")
        assert resolve_url(locator) == locator.url()
        assert resolve_url("https://x/y") == "https://x/y"


# ---------------------------------------------------------------------------
# TestStorageClientCache
# ---------------------------------------------------------------------------

class TestStorageClientCache:

    def test_one_client_per_signer(self):
        factory = MagicMock(side_effect=lambda signer: object())
        cache = StorageClientCache(factory)
        first = cache.get(OWNER)
        assert cache.get(OWNER.upper().replace("0X", "0x")) is first
        assert factory.call_count == 1
        cache.get("0x" + "33" * 20)
        assert len(cache) == 2

    def test_evict(self):
        cache = StorageClientCache(lambda signer: object())
        first = cache.get(OWNER)
        cache.evict(OWNER)
        assert cache.get(OWNER) is not first


# ---------------------------------------------------------------------------
# TestHttpGet
# ---------------------------------------------------------------------------

class TestHttpGet:

    def _response(self, body=b"bytes", status=200):
        resp = MagicMock()
        resp.status = status
        resp.read.return_value = body
        resp.__enter__.return_value = resp
        return resp

    def test_success(self):
        with patch("urllib.request.urlopen", return_value=self._response(b"abc")) as urlopen:
            assert http_get("https://gw/resolve/x", 5) == b"abc"
        assert urlopen.call_args.kwargs["timeout"] == 5

    def test_http_error(self):
        err = urllib.error.HTTPError("https://gw/x", 404, "Not Found", {}, io.BytesIO(b""))
        with patch("urllib.request.urlopen", side_effect=err):
            with pytest.raises(FetchFailed, match="HTTP 404"):
                http_get("https://gw/x", 5)

    def test_non_2xx_status(self):
        with patch("urllib.request.urlopen", return_value=self._response(status=304)):
            with pytest.raises(FetchFailed, match="HTTP 304"):
                http_get("https://gw/x", 5)

    def test_connection_error(self):
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with pytest.raises(FetchFailed, match="refused"):
                http_get("https://gw/x", 5)


# ---------------------------------------------------------------------------
# TestRetrievalPipeline
# ---------------------------------------------------------------------------

class TestRetrievalPipeline:

    @pytest.mark.asyncio
    async def test_fetch_plaintext(self):
        fetcher = fetcher_returning(b"raw audio")
        retrieval = RetrievalPipeline(fetcher=fetcher, timeout=3)
        data = await retrieval.fetch_plaintext(ContentLocator("bagaP", OWNER))
        assert data == b"raw audio"
        fetcher.assert_awaited_once_with(f"https://{OWNER}.filbeam.io/bagaP", 3)

    @pytest.mark.asyncio
    async def test_plaintext_not_parsed(self):
        retrieval = RetrievalPipeline(fetcher=fetcher_returning(b"\x00"))
        assert await retrieval.fetch_plaintext("https://gw/x") == b"\x00"

    @pytest.mark.asyncio
    async def test_empty_body(self):
        retrieval = RetrievalPipeline(fetcher=fetcher_returning(b""))
        with pytest.raises(FetchFailed, match="empty"):
            await retrieval.fetch_plaintext("https://gw/x")

    @pytest.mark.asyncio
    async def test_unresolvable_locator_is_fetch_failed(self):
        fetcher = fetcher_returning(b"x")
        retrieval = RetrievalPipeline(fetcher=fetcher)
        with pytest.raises(FetchFailed, match="dataset owner"):
            await retrieval.fetch_plaintext(ContentLocator("bagaPIECE", None))
        fetcher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetcher_errors_become_fetch_failed(self):
        retrieval = RetrievalPipeline(fetcher=AsyncMock(side_effect=TimeoutError("slow")))
        with pytest.raises(FetchFailed, match="slow"):
            await retrieval.fetch_plaintext("https://gw/x")

    @pytest.mark.asyncio
    async def test_decrypt_requires_key_service(self):
        retrieval = RetrievalPipeline(fetcher=fetcher_returning(b"x"))
        with pytest.raises(ValueError):
            await retrieval.fetch_and_decrypt("https://gw/x", CONTENT_ID, AccessPolicy())

    @pytest.mark.asyncio
    async def test_garbage_is_malformed(self):
        retrieval = RetrievalPipeline(AsyncMock(), fetcher=fetcher_returning(b"<html>oops</html>"))
        with pytest.raises(MalformedHeader):
            await retrieval.fetch_and_decrypt("https://gw/x", CONTENT_ID, AccessPolicy())

    @skip_no_crypto
    @pytest.mark.asyncio
    async def test_fetch_and_decrypt(self):
        from mediaseal.seal.crypto import encrypt_content
        from mediaseal.seal.keys import LocalKeyService

        key_service = LocalKeyService.generate()
        policy = AccessPolicy()
        sealed = await encrypt_content(b"the track", CONTENT_ID, policy, key_service)

        retrieval = RetrievalPipeline(key_service, fetcher=fetcher_returning(sealed.blob))
        assert await retrieval.fetch_and_decrypt("https://gw/x", CONTENT_ID, policy) == b"the track"

        other = compute_content_identifier("0x" + "11" * 32, "0x" + "33" * 20)
        with pytest.raises(ContentIdentifierMismatch):
            await retrieval.fetch_and_decrypt("https://gw/x", other, policy)

    @skip_no_crypto
    @pytest.mark.asyncio
    async def test_tampered_download(self):
        from mediaseal.seal.crypto import encrypt_content
        from mediaseal.seal.keys import LocalKeyService

        key_service = LocalKeyService.generate()
        sealed = await encrypt_content(b"the track", CONTENT_ID, AccessPolicy(), key_service)
        tampered = bytearray(sealed.blob)
        tampered[-3] ^= 0x40

        retrieval = RetrievalPipeline(key_service, fetcher=fetcher_returning(bytes(tampered)))
        with pytest.raises(DecryptionFailed):
            await retrieval.fetch_and_decrypt("https://gw/x", CONTENT_ID, AccessPolicy())
