"""
Orderbook data structures.

Provides an aggregated (L2) depth table with:
- SortedDict for price-sorted levels (like BTreeMap)
- O(log n) upsert/remove of a level by price
- Immutable BookView snapshots handed to readers

Prices and volumes are venue integers (already scaled by the venue).
"""

from dataclasses import dataclass, field
from typing import Iterable, NamedTuple, Optional

from sortedcontainers import SortedDict


class Level(NamedTuple):
    """Aggregated price level: (price, volume, orders)."""

    price: int
    volume: int
    orders: int


@dataclass
class TableUpdate:
    """Book delta covering venue sequence points [msg_ids_start, msg_ids_end]."""

    msg_ids_start: int
    msg_ids_end: int
    msg_id: int
    bids: list[Level] = field(default_factory=list)
    asks: list[Level] = field(default_factory=list)


@dataclass
class Snapshot:
    """Full point-in-time book state tagged with its sequence number."""

    bids: list[Level]
    asks: list[Level]
    msg_id: int
    time: Optional[int] = None


class BookSide:
    """
    One side of the book.

    Bids are keyed by negative price so that both sides iterate best-first.
    Invariant: unique prices, strictly positive volumes.
    """

    def __init__(self, is_bid: bool):
        self.is_bid = is_bid
        self._levels: SortedDict[int, Level] = SortedDict()

    def _key(self, price: int) -> int:
        return -price if self.is_bid else price

    def __len__(self) -> int:
        return len(self._levels)

    def __contains__(self, price: int) -> bool:
        return self._key(price) in self._levels

    def get(self, price: int) -> Optional[Level]:
        return self._levels.get(self._key(price))

    def set(self, level: Level):
        """Upsert a level. Non-positive volume removes the price."""
        key = self._key(level.price)
        if level.volume <= 0:
            self._levels.pop(key, None)
        else:
            self._levels[key] = Level(level.price, level.volume, level.orders)

    def apply(self, levels: Iterable[Level]):
        for level in levels:
            self.set(level)

    def best(self) -> Optional[Level]:
        if not self._levels:
            return None
        return self._levels.peekitem(0)[1]

    def levels(self) -> list[Level]:
        """Levels best-first (bids descending, asks ascending)."""
        return list(self._levels.values())

    def clear(self):
        self._levels.clear()


@dataclass(frozen=True)
class BookView:
    """Immutable copy of a synced book, safe to hand to other threads."""

    bids: tuple[Level, ...]
    asks: tuple[Level, ...]
    msg_id: int

    def best_bid(self) -> Optional[int]:
        return self.bids[0].price if self.bids else None

    def best_ask(self) -> Optional[int]:
        return self.asks[0].price if self.asks else None

    def spread(self) -> Optional[int]:
        bid, ask = self.best_bid(), self.best_ask()
        if bid is not None and ask is not None:
            return ask - bid
        return None

    def mid_price(self) -> Optional[int]:
        bid, ask = self.best_bid(), self.best_ask()
        if bid is not None and ask is not None:
            return (bid + ask) // 2
        return None

    def to_dict(self) -> dict:
        return {
            "bids": [list(level) for level in self.bids],
            "asks": [list(level) for level in self.asks],
            "msg_id": self.msg_id,
        }


class DepthTable:
    """Bid/ask sides of one instrument plus the last applied sequence number."""

    def __init__(self):
        self.bids = BookSide(is_bid=True)
        self.asks = BookSide(is_bid=False)
        self.msg_id: int = 0

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "DepthTable":
        table = cls()
        table.bids.apply(snapshot.bids)
        table.asks.apply(snapshot.asks)
        table.msg_id = snapshot.msg_id
        return table

    def apply_update(self, update: TableUpdate):
        """Apply a delta: zero volume removes a level, anything else upserts it."""
        self.bids.apply(update.bids)
        self.asks.apply(update.asks)
        self.msg_id = update.msg_id

    def clear(self):
        self.bids.clear()
        self.asks.clear()
        self.msg_id = 0

    def view(self) -> BookView:
        return BookView(
            bids=tuple(self.bids.levels()),
            asks=tuple(self.asks.levels()),
            msg_id=self.msg_id,
        )
