"""
Depth book module.

Keeps sorted L2 books in sync with the venue from REST snapshots and
websocket deltas.
"""

from .book import (
    BookSide,
    BookView,
    DepthTable,
    Level,
    Snapshot,
    TableUpdate,
)
from .depth import DepthBook, SyncPhase
from .stream import DepthBookStream

__all__ = [
    # Sync wrapper (recommended for most users)
    "DepthBookStream",
    # Async synchronizer
    "DepthBook",
    "SyncPhase",
    # Data structures
    "BookSide",
    "BookView",
    "DepthTable",
    "Level",
    "Snapshot",
    "TableUpdate",
]
