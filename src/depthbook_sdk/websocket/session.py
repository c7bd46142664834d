"""
Multiplexed websocket session.

One physical connection carries many logical streams:
1. Inbound frames go into a FIFO queue drained by a single worker, so the
   handling of one message never overlaps the next
2. Replies (messages with an "id") settle the matching request job
3. Push messages are routed by stream key to the subscribed handler
4. When the connection ends, outstanding jobs fail and every subscription is
   notified of the disconnect exactly once; then the session reconnects after
   a cooldown if reconnection is enabled
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from .._internal.wire import decode_frame
from ..errors import ConnectionDropped
from ..types import StreamKey
from .jobs import JobCorrelator
from .registry import StreamHandler, SubscriptionRegistry

log = logging.getLogger(__name__)

UrlProvider = Callable[[str], Awaitable[Optional[str]]]

# Worker shutdown marker
_STOP = object()


class SocketSession:
    """
    Websocket session with request correlation, stream fan-out and reconnection.

    Args:
        ws_path: Websocket URL (or base URL handed to the url provider).
        should_reconnect: Reconnect after repeat_cooldown when the connection ends.
        repeat_cooldown: Seconds between reconnects and between subscribe retries.
        session_factory: Callable returning an aiohttp.ClientSession-like object.
        logger: Optional logger, defaults to this module's logger.

    Example:
        >>> session = SocketSession("wss://example/ws")
        >>> task = asyncio.create_task(session.connect())
        >>> ...
        >>> await session.close()
        >>> await task
    """

    def __init__(
        self,
        ws_path: str,
        should_reconnect: bool = True,
        repeat_cooldown: float = 5.0,
        session_factory: Callable[[], Any] = aiohttp.ClientSession,
        logger: Optional[logging.Logger] = None,
    ):
        self.ws_path = ws_path
        self.should_reconnect = should_reconnect
        self.repeat_cooldown = repeat_cooldown
        self._session_factory = session_factory
        self._log = logger or log

        self.jobs = JobCorrelator(self.send, logger=self._log)
        self.registry = SubscriptionRegistry(
            self.jobs, repeat_cooldown, is_terminated=lambda: self.is_terminated, logger=self._log
        )

        self.is_closed = True
        # Set by close() or once connect() returns; pending retries give up
        self.is_terminated = False
        self.last_connected: float = 0.0
        self.generation = 0

        self._ws = None
        self._connected = asyncio.Event()
        self._inbound: Optional[asyncio.Queue] = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until a connection is live. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self, url_provider: Optional[UrlProvider] = None) -> None:
        """
        Run the session until it terminates.

        Returns after close() is called, or after the first connection ends
        when reconnection is disabled.

        Args:
            url_provider: Coroutine function mapping ws_path to the URL to
                          connect to, or None to skip this attempt.
        """
        url_provider = url_provider or self.get_url
        self.is_closed = False
        self.is_terminated = False
        try:
            async with self._session_factory() as http:
                while not self.is_closed:
                    try:
                        await self._run(http, url_provider)
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        self._log.warning("Websocket error: %s", e)
                    finally:
                        await self._on_session_end()

                    if not self.should_reconnect or self.is_closed:
                        break
                    self._log.info("Websocket disconnected, reconnecting in %.1fs", self.repeat_cooldown)
                    await asyncio.sleep(self.repeat_cooldown)
        finally:
            self.is_closed = True
            self.is_terminated = True
            self._log.info("Websocket client terminated")

    async def close(self) -> None:
        """Stop reconnecting, close the live connection and end pending retries."""
        self.is_closed = True
        self.is_terminated = True
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()

    async def get_url(self, ws_path: str) -> Optional[str]:
        """Default url provider: connect to ws_path as is."""
        return ws_path

    async def _run(self, http, url_provider: UrlProvider):
        url = await url_provider(self.ws_path)
        if not url:
            self._log.warning("No websocket url available, skipping connection attempt")
            return
        if self.is_closed:
            return

        async with http.ws_connect(url) as ws:
            self._ws = ws
            self._inbound = asyncio.Queue()
            self.generation += 1
            self.last_connected = time.time()
            self._connected.set()
            self._log.info("Connected to %s", url)

            worker = asyncio.create_task(self._drain(self._inbound))
            try:
                await self._read(ws, self._inbound)
            finally:
                self._connected.clear()
                self._ws = None
                # Deliver everything already received before the disconnect round
                self._inbound.put_nowait(_STOP)
                try:
                    await worker
                except asyncio.CancelledError:
                    worker.cancel()
                    raise

    async def _read(self, ws, inbound: asyncio.Queue):
        async for msg in ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                inbound.put_nowait(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                self._log.warning("Websocket error frame: %s", ws.exception())
                break
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                break
        self._log.info("Websocket closed (code=%s)", getattr(ws, "close_code", None))

    async def _on_session_end(self):
        failed = self.jobs.fail_all()
        notified = await self.registry.notify_disconnect()
        if failed or notified:
            self._log.info("Disconnect: failed %d pending requests, notified %d subscriptions", failed, notified)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send(self, message: dict) -> None:
        """Send one JSON message. Raises ConnectionDropped if not connected."""
        ws = self._ws
        if ws is None or ws.closed:
            raise ConnectionDropped("Websocket not connected")
        self._log.debug("Sending to ws: %s", message)
        try:
            await ws.send_json(message)
        except (ConnectionError, RuntimeError) as e:
            raise ConnectionDropped(f"Send failed: {e}") from e

    async def subscribe(
        self,
        key: StreamKey,
        handler: StreamHandler,
        payload: dict,
        timeout: Optional[float] = None,
    ) -> Any:
        return await self.registry.subscribe(key, handler, payload, timeout)

    async def unsubscribe(self, key: StreamKey, payload: dict, timeout: Optional[float] = None) -> Any:
        return await self.registry.unsubscribe(key, payload, timeout)

    # =========================================================================
    # Inbound
    # =========================================================================

    async def _drain(self, inbound: asyncio.Queue):
        """Single consumer: handle queued frames strictly one at a time."""
        while True:
            raw = await inbound.get()
            if raw is _STOP:
                return
            try:
                await self._handle_frame(raw)
            except Exception:
                self._log.exception("Failed to handle message: %r", raw)

    async def _handle_frame(self, raw):
        self._log.debug("Received: %r", raw)
        message = decode_frame(raw)
        if message.get("id") is not None:
            self.jobs.resolve(message)
            return
        key = self.route(message)
        if key is None:
            self._log.warning("Unknown subscription message: %s", message)
            return
        await self.registry.dispatch(key, self.extract_payload(message))

    def route(self, message: dict) -> Optional[StreamKey]:
        """Map a push message to its stream key. Override in subclasses."""
        return message.get("stream")

    def extract_payload(self, message: dict) -> Any:
        """Part of a push message handed to the stream handler."""
        return message.get("result", message)
