"""
Instrument identifiers and stream routing keys.

A stream key routes one inbound push message to exactly one subscription.
Market and execution report keys are plain tuples so they are injective
over everything they encode.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Hashable, Union


class SocketEvent(str, Enum):
    """Streams that can be subscribed to over the websocket."""

    BBO = "bbo"
    TRADE = "trade"
    BOOK_DELTA = "snap"
    EXECUTION_REPORT = "fills"


MARKET_EVENTS = (SocketEvent.BBO, SocketEvent.TRADE, SocketEvent.BOOK_DELTA)

StreamKey = Hashable


@dataclass(frozen=True)
class TradedPair:
    """Base/quote token pair."""

    base: str
    quote: str

    def __str__(self) -> str:
        return f"{self.base}/{self.quote}"


@dataclass(frozen=True)
class ExchangeTicker:
    """A traded pair plus the book it trades on (ecosystem or router book)."""

    pair: TradedPair
    is_ecosystem_book: bool = False

    def __str__(self) -> str:
        book = "ecosystem" if self.is_ecosystem_book else "router"
        return f"{self.pair}@{book}"

    def to_wire(self) -> dict:
        return {
            "base": self.pair.base,
            "quote": self.pair.quote,
            "ecosystem_book": self.is_ecosystem_book,
        }


def normalize_address(value: Union[int, str]) -> str:
    """
    Normalize an account address to 0x-prefixed, 64 hex digit lowercase form.

    Args:
        value: Integer, decimal string, or hex string (with or without 0x).

    Returns:
        Normalized address string, e.g. "0x00...0abc"
    """
    if isinstance(value, int):
        number = value
    elif value.lower().startswith("0x"):
        number = int(value, 16)
    else:
        number = int(value)
    if number < 0:
        raise ValueError("Address cannot be negative")
    return f"0x{number:064x}"


def market_stream_key(ticker: ExchangeTicker, event: SocketEvent) -> StreamKey:
    """Routing key of a market data stream (bbo, trade, book delta)."""
    return (
        SocketEvent(event).value,
        ticker.pair.base,
        ticker.pair.quote,
        bool(ticker.is_ecosystem_book),
    )


def exec_report_stream_key(account: Union[int, str]) -> StreamKey:
    """Routing key of the execution report stream of a trading account."""
    return (SocketEvent.EXECUTION_REPORT.value, normalize_address(account))
