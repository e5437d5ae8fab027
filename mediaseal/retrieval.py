"""
RetrievalPipeline — fetch a piece from the gateway and open it.
"""

from __future__ import annotations

import asyncio
import logging
import urllib.error
import urllib.request
from typing import Awaitable, Callable, Union

from mediaseal import FETCH_TIMEOUT_SECS
from mediaseal.errors import FetchFailed, InvalidInput
from mediaseal.seal.crypto import decrypt_content
from mediaseal.seal.keys import AccessPolicy, KeyService
from mediaseal.storage import ContentLocator

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, float], Awaitable[bytes]]
Locator = Union[str, ContentLocator]


def http_get(url: str, timeout: float) -> bytes:
    """Blocking GET. Raises FetchFailed on transport errors or non-2xx status."""
    req = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            status = getattr(resp, "status", 200)
            if not 200 <= status < 300:
                raise FetchFailed(f"Gateway returned HTTP {status} for {url}")
            return resp.read()
    except urllib.error.HTTPError as e:
        raise FetchFailed(f"Gateway returned HTTP {e.code} for {url}") from e
    except urllib.error.URLError as e:
        raise FetchFailed(f"Fetch failed for {url}: {e.reason}") from e
    except (OSError, ValueError) as e:
        raise FetchFailed(f"Fetch failed for {url}: {e}") from e


async def default_fetcher(url: str, timeout: float) -> bytes:
    return await asyncio.to_thread(http_get, url, timeout)


def resolve_url(locator: Locator) -> str:
    if isinstance(locator, ContentLocator):
        return locator.url()
    return locator


class RetrievalPipeline:
    """Consumer side of the upload pipeline.

    Usage:
        retrieval = RetrievalPipeline(key_service)
        audio = await retrieval.fetch_and_decrypt(locator, content_id, policy)
    """

    def __init__(
        self,
        key_service: KeyService | None = None,
        fetcher: Fetcher | None = None,
        timeout: float = FETCH_TIMEOUT_SECS,
    ) -> None:
        self.key_service = key_service
        self._fetch = fetcher or default_fetcher
        self.timeout = timeout

    async def _get(self, locator: Locator) -> bytes:
        try:
            url = resolve_url(locator)
        except InvalidInput as e:
            raise FetchFailed(f"Cannot locate {locator!r}: {e}") from e
        logger.debug("Fetching %s", url)
        try:
            data = await self._fetch(url, self.timeout)
        except FetchFailed:
            raise
        except Exception as e:
            raise FetchFailed(f"Fetch failed for {url}: {e}") from e
        if not data:
            raise FetchFailed(f"Gateway returned an empty body for {url}")
        logger.info("Fetched %d bytes from %s", len(data), url)
        return bytes(data)

    async def fetch_and_decrypt(
        self,
        locator: Locator,
        content_identifier: str,
        policy: AccessPolicy,
    ) -> bytes:
        """Fetch a sealed blob and decrypt it.

        Fetch problems (including a locator that cannot be turned into a
        URL) raise FetchFailed; header and decryption problems raise the
        codec/crypto errors unchanged.
        """
        if self.key_service is None:
            raise ValueError("A key service is required to decrypt content")
        blob = await self._get(locator)
        return await decrypt_content(blob, content_identifier, policy, self.key_service)

    async def fetch_plaintext(self, locator: Locator) -> bytes:
        """Fetch an unencrypted piece as-is."""
        return await self._get(locator)
