"""
Websocket transport.

One multiplexed connection with request correlation, per-stream handlers and
reconnection.
"""

from .client import MarketDataClient
from .jobs import JobCorrelator
from .quoter import FixedDepthRequest, QuoterClient, format_stream_id
from .registry import CallbackHandler, StreamHandler, SubscriptionRegistry, SubscriptionState
from .session import SocketSession

__all__ = [
    "MarketDataClient",
    "QuoterClient",
    "FixedDepthRequest",
    "format_stream_id",
    "SocketSession",
    "JobCorrelator",
    "SubscriptionRegistry",
    "SubscriptionState",
    "StreamHandler",
    "CallbackHandler",
]
