"""
Market data websocket client.

Subscribes to per-instrument market streams (bbo, trades, book deltas) and
per-account execution reports over a single SocketSession.

In case of disconnection:
1. Outstanding subscribe/unsubscribe requests are retried (or time out)
2. Every subscriber gets exactly one on_disconnect() call
3. All subscriptions are dropped; subscribers re-subscribe once reconnected
4. If should_reconnect is set, the client reconnects after a short cooldown
"""

import logging
import os
from typing import Any, Awaitable, Callable, Optional, Union

import aiohttp

from ..types import (
    MARKET_EVENTS,
    ExchangeTicker,
    SocketEvent,
    StreamKey,
    TradedPair,
    exec_report_stream_key,
    market_stream_key,
)
from .registry import StreamHandler
from .session import SocketSession

log = logging.getLogger(__name__)

# Default configuration
DEFAULT_WS_URL = "wss://api.depthbook.example/ws"


class MarketDataClient(SocketSession):
    """
    Websocket client for market data and execution report streams.

    Args:
        ws_url: Websocket URL. Reads from DEPTHBOOK_WS_URL env var if not provided.
        should_reconnect: Reconnect automatically after disconnects (default: True).
        repeat_cooldown: Seconds between reconnects and subscribe retries (default: 5).
        listen_key_provider: Optional coroutine function returning a listen key.
                             When set, every connection is authenticated with it.
        signer: Signer address sent along with the listen key.
        session_factory: Callable returning an aiohttp.ClientSession-like object.
        logger: Optional logger.

    Example:
        >>> client = MarketDataClient()
        >>> task = asyncio.create_task(client.connect())
        >>> await client.subscribe_on_depth(handler, ticker)
    """

    def __init__(
        self,
        ws_url: str | None = None,
        should_reconnect: bool = True,
        repeat_cooldown: float = 5.0,
        listen_key_provider: Optional[Callable[[], Awaitable[str]]] = None,
        signer: str | None = None,
        session_factory: Callable[[], Any] = aiohttp.ClientSession,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(
            ws_url or os.getenv("DEPTHBOOK_WS_URL", DEFAULT_WS_URL),
            should_reconnect=should_reconnect,
            repeat_cooldown=repeat_cooldown,
            session_factory=session_factory,
            logger=logger or log,
        )
        self.listen_key_provider = listen_key_provider
        self.signer = signer

    @property
    def ws_url(self) -> str:
        return self.ws_path

    async def get_url(self, ws_path: str) -> Optional[str]:
        """Append listen key and signer to the URL when authentication is configured."""
        if self.listen_key_provider is None:
            return ws_path
        try:
            listen_key = await self.listen_key_provider()
        except Exception as e:
            self._log.warning("Failed to query listen key for signer %s: %s", self.signer, e)
            return None
        if not listen_key:
            self._log.warning("Empty listen key for signer %s", self.signer)
            return None
        url = f"{ws_path}?listenKey={listen_key}"
        if self.signer is not None:
            url += f"&signer={self.signer}"
        return url

    # =========================================================================
    # Market data streams
    # =========================================================================

    async def subscribe_on_market_data(
        self,
        handler: StreamHandler,
        event: SocketEvent,
        ticker: ExchangeTicker,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Subscribe handler to a market data stream of ticker.

        Args:
            handler: Receives each push payload and the disconnect signal.
            event: SocketEvent.BBO, SocketEvent.TRADE or SocketEvent.BOOK_DELTA.
            ticker: Instrument to subscribe to.
            timeout: Seconds to wait for acknowledgement; None retries until acknowledged.

        Returns:
            Result of the acknowledgement (usually "OK").
        """
        event = self._market_event(event)
        payload = {"action": "subscribe", "stream": event.value, "ticker": ticker.to_wire()}
        result = await self.subscribe(market_stream_key(ticker, event), handler, payload, timeout)
        self._log.info("Subscribed to %s %s: %s", event.value, ticker, result)
        return result

    async def unsubscribe_from_market_data(
        self,
        event: SocketEvent,
        ticker: ExchangeTicker,
        timeout: Optional[float] = None,
    ) -> Any:
        """Unsubscribe from a market data stream of ticker."""
        event = self._market_event(event)
        payload = {"action": "unsubscribe", "stream": event.value, "ticker": ticker.to_wire()}
        result = await self.unsubscribe(market_stream_key(ticker, event), payload, timeout)
        self._log.info("Unsubscribed from %s %s: %s", event.value, ticker, result)
        return result

    async def subscribe_on_depth(
        self, handler: StreamHandler, ticker: ExchangeTicker, timeout: Optional[float] = None
    ) -> Any:
        """Subscribe handler to the book delta stream of ticker."""
        return await self.subscribe_on_market_data(handler, SocketEvent.BOOK_DELTA, ticker, timeout)

    async def unsubscribe_from_depth(self, ticker: ExchangeTicker, timeout: Optional[float] = None) -> Any:
        return await self.unsubscribe_from_market_data(SocketEvent.BOOK_DELTA, ticker, timeout)

    @staticmethod
    def _market_event(event: SocketEvent) -> SocketEvent:
        event = SocketEvent(event)
        if event not in MARKET_EVENTS:
            raise ValueError(f"{event.value} is not a market data stream")
        return event

    # =========================================================================
    # Execution reports
    # =========================================================================

    async def subscribe_on_exec_report(
        self,
        handler: StreamHandler,
        account: Union[int, str],
        timeout: Optional[float] = None,
    ) -> Any:
        """Subscribe handler to execution reports of a trading account."""
        payload = {"action": "subscribe", "stream": f"{SocketEvent.EXECUTION_REPORT.value}_{account}"}
        result = await self.subscribe(exec_report_stream_key(account), handler, payload, timeout)
        self._log.info("Subscribed to execution reports of %s: %s", account, result)
        return result

    async def unsubscribe_from_exec_report(
        self, account: Union[int, str], timeout: Optional[float] = None
    ) -> Any:
        payload = {"action": "unsubscribe", "stream": f"{SocketEvent.EXECUTION_REPORT.value}_{account}"}
        return await self.unsubscribe(exec_report_stream_key(account), payload, timeout)

    # =========================================================================
    # Routing
    # =========================================================================

    def route(self, message: dict) -> Optional[StreamKey]:
        stream = message.get("stream")
        try:
            event = SocketEvent(stream)
        except ValueError:
            return None

        if event in MARKET_EVENTS:
            pair = message.get("pair") or {}
            if "base" not in pair or "quote" not in pair:
                return None
            ticker = ExchangeTicker(TradedPair(pair["base"], pair["quote"]), bool(message.get("ecosystem", False)))
            return market_stream_key(ticker, event)

        client = message.get("client")
        if client is None:
            return None
        try:
            return exec_report_stream_key(client)
        except (TypeError, ValueError):
            return None
