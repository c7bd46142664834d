"""
Fixed-depth quoter websocket client.

The quoter endpoint serves aggregated books of a fixed number of levels,
with prices bucketed to a power of ten. Each (pair, bucket, book, levels)
combination is a separate stream identified by a stream id such as
"stream_ETH_USDC_ag_100_0_10".
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

import aiohttp

from .registry import StreamHandler
from .session import SocketSession

log = logging.getLogger(__name__)

# Default configuration
DEFAULT_QUOTER_WS_URL = "wss://api.depthbook.example/quoter"

# Acknowledgements the quoter sends instead of "OK"
_ACKS = {"subscribed", "unsubscribed"}


@dataclass(frozen=True)
class FixedDepthRequest:
    """
    Aggregated book subscription.

    Args:
        base: Base token.
        quote: Quote token.
        exponent: Prices are bucketed to 10 ** exponent (may be negative).
        levels: Number of levels per side.
        ecosystem: Ecosystem book instead of the router book.
    """

    base: str
    quote: str
    exponent: int
    levels: int
    ecosystem: bool = False

    def to_wire(self) -> dict:
        return {
            "base": self.base,
            "quote": self.quote,
            "exponent": self.exponent,
            "levels": self.levels,
            "ecosystem": self.ecosystem,
        }


def format_stream_id(request: FixedDepthRequest) -> str:
    """
    Stream id the quoter tags pushes of request with.

    Example:
        >>> format_stream_id(FixedDepthRequest("ETH", "USDC", exponent=2, levels=10))
        'stream_ETH_USDC_ag_100_0_10'
        >>> format_stream_id(FixedDepthRequest("ETH", "USDC", exponent=-3, levels=5))
        'stream_ETH_USDC_ag_0_001_0_5'
    """
    if request.exponent >= 0:
        bucket = f"ag_{10 ** request.exponent}"
    else:
        bucket = "ag_0_" + "0" * (-request.exponent - 1) + "1"
    return f"stream_{request.base}_{request.quote}_{bucket}_{int(request.ecosystem)}_{request.levels}"


class QuoterClient(SocketSession):
    """
    Websocket client for fixed-depth aggregated books.

    Args:
        ws_url: Websocket URL. Reads from DEPTHBOOK_QUOTER_WS_URL env var if not provided.
        should_reconnect: Reconnect automatically after disconnects (default: True).
        repeat_cooldown: Seconds between reconnects and subscribe retries (default: 5).
        session_factory: Callable returning an aiohttp.ClientSession-like object.
        logger: Optional logger.

    Example:
        >>> quoter = QuoterClient()
        >>> task = asyncio.create_task(quoter.connect())
        >>> request = FixedDepthRequest("ETH", "USDC", exponent=2, levels=10)
        >>> await quoter.subscribe_on_depth(handler, request)
    """

    def __init__(
        self,
        ws_url: str | None = None,
        should_reconnect: bool = True,
        repeat_cooldown: float = 5.0,
        session_factory: Callable[[], Any] = aiohttp.ClientSession,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(
            ws_url or os.getenv("DEPTHBOOK_QUOTER_WS_URL", DEFAULT_QUOTER_WS_URL),
            should_reconnect=should_reconnect,
            repeat_cooldown=repeat_cooldown,
            session_factory=session_factory,
            logger=logger or log,
        )

    @property
    def ws_url(self) -> str:
        return self.ws_path

    async def subscribe_on_depth(
        self,
        handler: StreamHandler,
        request: FixedDepthRequest,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Subscribe handler to the aggregated book described by request.

        Returns:
            "OK" once the quoter acknowledges the subscription.
        """
        payload = {"action": "subscribe", "stream": "snap", "ticker": request.to_wire()}
        result = await self.subscribe(format_stream_id(request), handler, payload, timeout)
        self._log.info("Subscribed to %s: %s", format_stream_id(request), result)
        return _normalize_ack(result)

    async def unsubscribe_from_depth(self, request: FixedDepthRequest, timeout: Optional[float] = None) -> Any:
        payload = {"action": "unsubscribe", "stream": "snap", "ticker": request.to_wire()}
        result = await self.unsubscribe(format_stream_id(request), payload, timeout)
        return _normalize_ack(result)

    def route(self, message: dict) -> Optional[str]:
        stream = message.get("stream")
        return stream if isinstance(stream, str) else None


def _normalize_ack(result: Any) -> Any:
    return "OK" if result in _ACKS else result
