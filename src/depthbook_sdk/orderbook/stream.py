"""
Synchronous wrapper for depth book streaming.

Runs the websocket client and the depth synchronizer on an event loop in a
background thread. The loop thread is the only writer of book state; it
publishes immutable BookView copies that other threads read under a lock.

Example:
    >>> from depthbook_sdk import DepthBookStream, ExchangeTicker, TradedPair
    >>> eth = ExchangeTicker(TradedPair("ETH", "USDC"))
    >>> with DepthBookStream(tickers=[eth]) as stream:
    ...     print(stream.best_bid(eth), stream.best_ask(eth))
"""

import asyncio
import logging
import threading
from typing import Callable, Optional

from ..errors import DepthBookError
from ..http import SnapshotHttpClient
from ..types import ExchangeTicker
from ..websocket.client import MarketDataClient
from .book import BookView
from .depth import DepthBook

log = logging.getLogger(__name__)


class DepthBookStream:
    """
    Synchronous depth book stream with background websocket.

    Args:
        tickers: Instruments to watch.
        ws_url: Websocket URL (or DEPTHBOOK_WS_URL env var).
        rest_url: REST URL for snapshots (or DEPTHBOOK_API_URL env var).
        on_update: Optional callback after each book change, called on the
                   background thread. Signature: (stream, ticker, view) -> None
        repeat_cooldown: Seconds between reconnects and subscribe retries.
        resync_cooldown: Seconds between stale snapshot retries.

    Example:
        >>> with DepthBookStream(tickers=[eth]) as stream:
        ...     view = stream.get_book(eth)
    """

    def __init__(
        self,
        tickers: list[ExchangeTicker],
        ws_url: str | None = None,
        rest_url: str | None = None,
        on_update: Optional[Callable[["DepthBookStream", ExchangeTicker, BookView], None]] = None,
        repeat_cooldown: float = 5.0,
        resync_cooldown: float = 4.0,
    ):
        self._tickers = list(tickers)
        self._ws_url = ws_url
        self._rest_url = rest_url
        self._user_callback = on_update
        self._repeat_cooldown = repeat_cooldown
        self._resync_cooldown = resync_cooldown

        # Thread and async state
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._client: Optional[MarketDataClient] = None
        self._depth: Optional[DepthBook] = None

        # Synchronization
        self._lock = threading.RLock()
        self._views: dict[ExchangeTicker, BookView] = {}
        self._synced = threading.Event()
        self._stopped = threading.Event()
        self._error: Optional[Exception] = None

    def start(self) -> "DepthBookStream":
        """Start the background streaming thread. Returns self for chaining."""
        if self._thread is not None:
            raise RuntimeError("Stream already started")

        self._stopped.clear()
        self._synced.clear()
        self._error = None

        self._thread = threading.Thread(target=self._run_thread, daemon=True)
        self._thread.start()
        return self

    def stop(self):
        """Stop the background streaming thread."""
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def wait_for_sync(self, timeout: float = 30) -> bool:
        """Wait until every ticker is synced once. Returns True if synced, False if timeout."""
        synced = self._synced.wait(timeout=timeout)
        if self._error is not None:
            raise self._error
        return synced

    @property
    def synced(self) -> bool:
        """True if every ticker has been synced at least once."""
        return self._synced.is_set()

    def is_synced(self, ticker: ExchangeTicker) -> bool:
        with self._lock:
            return ticker in self._views

    def get_book(self, ticker: ExchangeTicker) -> Optional[BookView]:
        """Latest synced view of ticker, or None while unsynced."""
        with self._lock:
            return self._views.get(ticker)

    def best_bid(self, ticker: ExchangeTicker) -> Optional[int]:
        view = self.get_book(ticker)
        return view.best_bid() if view else None

    def best_ask(self, ticker: ExchangeTicker) -> Optional[int]:
        view = self.get_book(ticker)
        return view.best_ask() if view else None

    def spread(self, ticker: ExchangeTicker) -> Optional[int]:
        view = self.get_book(ticker)
        return view.spread() if view else None

    def get_stats(self, ticker: ExchangeTicker) -> dict:
        """Synchronizer counters of ticker (evaluated on the loop thread)."""
        loop, depth = self._loop, self._depth
        if loop is None or depth is None:
            return {}

        async def collect():
            return depth.get_stats(ticker)

        return asyncio.run_coroutine_threadsafe(collect(), loop).result(timeout=5)

    # =========================================================================
    # Context manager
    # =========================================================================

    def __enter__(self) -> "DepthBookStream":
        self.start()
        if not self.wait_for_sync(timeout=30):
            self.stop()
            raise TimeoutError("Failed to sync depth book within 30 seconds")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    # =========================================================================
    # Internal
    # =========================================================================

    def _on_update(self, ticker: ExchangeTicker, view: BookView):
        """Called on the loop thread after each book change."""
        with self._lock:
            self._views[ticker] = view
            all_synced = all(t in self._views for t in self._tickers)

        if all_synced and not self._synced.is_set():
            self._synced.set()

        if self._user_callback is not None:
            try:
                self._user_callback(self, ticker, view)
            except Exception:
                log.exception("on_update callback failed for %s", ticker)

    def _on_disconnect(self, ticker: ExchangeTicker):
        with self._lock:
            self._views.pop(ticker, None)

    def _run_thread(self):
        """Background thread entry point."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        try:
            self._loop.run_until_complete(self._run_until_stopped())
        except DepthBookError as e:
            self._error = e
            self._synced.set()
        except Exception as e:
            self._error = DepthBookError(f"Stream error: {e}")
            self._synced.set()
        finally:
            self._loop.close()
            self._loop = None
            self._client = None
            self._depth = None

    async def _run_until_stopped(self):
        """Run the client and watch every ticker until stop is requested."""
        self._client = MarketDataClient(ws_url=self._ws_url, repeat_cooldown=self._repeat_cooldown)
        self._depth = DepthBook(
            self._client,
            SnapshotHttpClient(rest_url=self._rest_url),
            resync_cooldown=self._resync_cooldown,
        )
        if self._stopped.is_set():
            return

        connect_task = asyncio.create_task(self._client.connect())
        watch_tasks = [
            asyncio.create_task(
                self._depth.watch(ticker, on_update=self._on_update, on_disconnect=self._on_disconnect)
            )
            for ticker in self._tickers
        ]

        try:
            # Wait for either the client to terminate or stop to be requested
            while not self._stopped.is_set():
                if connect_task.done():
                    # Re-raise any exception from the client
                    connect_task.result()
                    return
                await asyncio.sleep(0.1)
        finally:
            self._depth.close()
            await self._client.close()
            for task in [*watch_tasks, connect_task]:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*watch_tasks, connect_task, return_exceptions=True)
