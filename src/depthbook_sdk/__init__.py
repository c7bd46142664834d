"""
DepthBook SDK

Live L2 order books and market data streams over a single websocket.

Sync example (recommended):
    >>> from depthbook_sdk import DepthBookStream, ExchangeTicker, TradedPair
    >>> eth = ExchangeTicker(TradedPair("ETH", "USDC"))
    >>> with DepthBookStream(tickers=[eth]) as stream:
    ...     print(stream.best_bid(eth), stream.best_ask(eth))
    ...     print(f"Spread: {stream.spread(eth)}")

Async example:
    >>> from depthbook_sdk import DepthBook, MarketDataClient, SnapshotHttpClient
    >>> client = MarketDataClient()
    >>> task = asyncio.create_task(client.connect())
    >>> depth = DepthBook(client, SnapshotHttpClient())
    >>> await depth.watch(eth, on_update=lambda ticker, view: print(view.best_bid()))

Raw streams:
    >>> await client.subscribe_on_market_data(handler, SocketEvent.BBO, eth)
"""

# orderbook first: the wire parsers depend on its data structures
from .orderbook import (
    BookView,
    DepthBook,
    DepthBookStream,
    DepthTable,
    Level,
    Snapshot,
    SyncPhase,
    TableUpdate,
)
from .http import SnapshotHttpClient
from .websocket import (
    CallbackHandler,
    FixedDepthRequest,
    MarketDataClient,
    QuoterClient,
    SocketSession,
    StreamHandler,
)
from .types import (
    ExchangeTicker,
    SocketEvent,
    TradedPair,
    exec_report_stream_key,
    market_stream_key,
    normalize_address,
)
from .errors import (
    AccessDeniedError,
    ConnectionDropped,
    DepthBookError,
    DuplicateSubscriptionError,
    HttpApiError,
    PendingRequestError,
    RateLimitError,
    RequestTimeout,
    SubscriptionError,
    SubscriptionTimeout,
)

__version__ = "0.1.0"

__all__ = [
    # Sync wrapper (recommended for most users)
    "DepthBookStream",
    # Async clients (for advanced users)
    "DepthBook",
    "SyncPhase",
    "MarketDataClient",
    "QuoterClient",
    "FixedDepthRequest",
    "SocketSession",
    "SnapshotHttpClient",
    "StreamHandler",
    "CallbackHandler",
    # Data structures
    "BookView",
    "DepthTable",
    "Level",
    "Snapshot",
    "TableUpdate",
    # Identifiers
    "ExchangeTicker",
    "TradedPair",
    "SocketEvent",
    "market_stream_key",
    "exec_report_stream_key",
    "normalize_address",
    # Exceptions
    "DepthBookError",
    "RateLimitError",
    "AccessDeniedError",
    "HttpApiError",
    "SubscriptionError",
    "DuplicateSubscriptionError",
    "PendingRequestError",
    "ConnectionDropped",
    "RequestTimeout",
    "SubscriptionTimeout",
    # Version
    "__version__",
]
