"""
Thin REST client for book snapshots and listen keys.

Only what the depth synchronizer and the authenticated websocket need;
order placement and account endpoints are not covered.
"""

import logging
import os
from typing import Optional

import aiohttp

from ._internal.wire import parse_snapshot
from .errors import AccessDeniedError, HttpApiError, RateLimitError
from .orderbook.book import Snapshot
from .types import ExchangeTicker

log = logging.getLogger(__name__)

# Default configuration
DEFAULT_REST_URL = "https://api.depthbook.example"


class SnapshotHttpClient:
    """
    REST snapshot source.

    Args:
        rest_url: REST API URL. Reads from DEPTHBOOK_API_URL env var if not provided.
        api_key: API key sent as bearer token. Reads from DEPTHBOOK_API_KEY env var.
                 Only required for get_listen_key().
        token_addresses: Optional token symbol -> address map used in requests.
        timeout: Total request timeout in seconds.
        logger: Optional logger.

    Example:
        >>> http = SnapshotHttpClient()
        >>> snapshot = await http.get_snapshot(ticker)
        >>> print(snapshot.msg_id, snapshot.bids[:3])
    """

    def __init__(
        self,
        rest_url: str | None = None,
        api_key: str | None = None,
        token_addresses: dict[str, str] | None = None,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.rest_url = (rest_url or os.getenv("DEPTHBOOK_API_URL", DEFAULT_REST_URL)).rstrip("/")
        self.api_key = api_key or os.getenv("DEPTHBOOK_API_KEY", "")
        self.token_addresses = token_addresses or {}
        self.timeout = timeout
        self._log = logger or log

    def _headers(self, auth: bool) -> dict:
        headers = {"Content-Type": "application/json"}
        if auth:
            if not self.api_key:
                raise ValueError(
                    "API key required. Pass api_key parameter or set DEPTHBOOK_API_KEY environment variable."
                )
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get(self, path: str, params: dict | None = None, auth: bool = False):
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(
                f"{self.rest_url}{path}",
                params=params,
                headers=self._headers(auth),
            ) as resp:
                if resp.status == 429:
                    text = await resp.text()
                    raise RateLimitError(f"Rate limit exceeded: {text}")
                elif resp.status in (401, 403):
                    text = await resp.text()
                    raise AccessDeniedError(f"Permission denied: {text}")
                elif resp.status != 200:
                    text = await resp.text()
                    raise HttpApiError(f"GET {path} failed: {resp.status} - {text}")

                data = await resp.json(content_type=None)

        if isinstance(data, dict) and data.get("error") is not None:
            raise HttpApiError(f"GET {path} failed: {data['error']}")
        if isinstance(data, dict) and "result" in data:
            return data["result"]
        return data

    async def get_snapshot(self, ticker: ExchangeTicker, levels: int = -1) -> Snapshot:
        """Fetch the book snapshot of ticker (all levels by default)."""
        params = {
            "base": self.token_addresses.get(ticker.pair.base, ticker.pair.base),
            "quote": self.token_addresses.get(ticker.pair.quote, ticker.pair.quote),
            "to_ecosystem_book": int(ticker.is_ecosystem_book),
            "levels": levels,
        }
        result = await self._get("/book/snapshot", params)
        snapshot = parse_snapshot(result)
        self._log.debug("Snapshot for %s at %d", ticker, snapshot.msg_id)
        return snapshot

    async def get_listen_key(self) -> str:
        """Fetch a listen key for authenticating the websocket connection."""
        result = await self._get("/user/listen_key", auth=True)
        return str(result)
