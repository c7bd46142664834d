"""
Depth book synchronizer.

Implements snapshot + delta orderbook sync per instrument:
1. Subscribe to the book delta stream (deltas are buffered while unsynced)
2. Pull a REST snapshot tagged with its sequence number
3. Drop buffered deltas the snapshot already covers, apply the rest
4. Apply live deltas while their ranges stay contiguous; on a gap, go back to 2

All state is mutated from the socket session's single worker or from the
snapshot task between awaits, both on the same event loop, so no locks are
needed. The only race (deltas arriving while a snapshot is in flight) is
resolved by buffering.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Protocol

from .._internal.stats import SyncStats
from .._internal.wire import parse_table_update
from ..errors import ConnectionDropped, DuplicateSubscriptionError, SubscriptionError, SubscriptionTimeout
from ..types import ExchangeTicker
from .book import BookView, DepthTable, Snapshot, TableUpdate

log = logging.getLogger(__name__)

UpdateCallback = Callable[[ExchangeTicker, BookView], None]
DisconnectCallback = Callable[[ExchangeTicker], None]


class SnapshotSource(Protocol):
    """Anything that can pull a book snapshot (see SnapshotHttpClient)."""

    async def get_snapshot(self, ticker: ExchangeTicker) -> Snapshot:
        ...


class DepthStreamClient(Protocol):
    """The part of MarketDataClient the synchronizer relies on."""

    async def subscribe_on_depth(self, handler: Any, ticker: ExchangeTicker, timeout: Optional[float] = None) -> Any:
        ...

    async def unsubscribe_from_depth(self, ticker: ExchangeTicker, timeout: Optional[float] = None) -> Any:
        ...


class SyncPhase(Enum):
    UNSYNCED = "unsynced"
    SNAPSHOTTING = "snapshotting"
    SYNCED = "synced"


@dataclass
class _Listener:
    on_update: Optional[UpdateCallback] = None
    on_disconnect: Optional[DisconnectCallback] = None


@dataclass
class InstrumentState:
    """Sync state of one instrument. Owned by DepthBook only."""

    ticker: ExchangeTicker
    table: DepthTable = field(default_factory=DepthTable)
    local_seq: int = 0
    pending: list[TableUpdate] = field(default_factory=list)
    # Sequence of the snapshot the current book was rebuilt from
    anchor_seq: Optional[int] = None
    applying: bool = False
    subscribed: bool = False
    subscribing: bool = False
    snapshot_task: Optional[asyncio.Task] = None
    listeners: list[_Listener] = field(default_factory=list)
    stats: SyncStats = field(default_factory=SyncStats)

    @property
    def phase(self) -> SyncPhase:
        if self.applying:
            return SyncPhase.SYNCED
        if self.snapshot_task is not None and not self.snapshot_task.done():
            return SyncPhase.SNAPSHOTTING
        return SyncPhase.UNSYNCED


class _DepthHandler:
    """Stream handler bound to one instrument."""

    def __init__(self, book: "DepthBook", state: InstrumentState):
        self._book = book
        self._state = state

    async def on_message(self, payload: Any) -> None:
        self._book._on_delta(self._state, payload)

    async def on_disconnect(self) -> None:
        self._book._on_disconnect(self._state)


class DepthBook:
    """
    Keeps a local sorted bid/ask book per instrument in sync with the venue.

    Args:
        client: Websocket client (MarketDataClient) delivering book deltas.
        snapshots: Snapshot source (SnapshotHttpClient) pulled on (re)sync.
        resync_cooldown: Seconds to wait before re-pulling a stale or failed snapshot.
        subscribe_timeout: Timeout for depth stream subscription, None retries until the client stops.
        auto_resubscribe: Re-subscribe and resync automatically after a disconnect.
        logger: Optional logger, defaults to this module's logger.

    Example:
        >>> depth = DepthBook(client, SnapshotHttpClient())
        >>> await depth.watch(ticker)
        >>> view = depth.get_book(ticker)
        >>> print(view.best_bid(), view.best_ask())
    """

    MAX_PENDING = 10_000

    def __init__(
        self,
        client: DepthStreamClient,
        snapshots: SnapshotSource,
        resync_cooldown: float = 4.0,
        subscribe_timeout: Optional[float] = None,
        auto_resubscribe: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.snapshots = snapshots
        self.resync_cooldown = resync_cooldown
        self.subscribe_timeout = subscribe_timeout
        self.auto_resubscribe = auto_resubscribe
        self._log = logger or log

        self._states: dict[ExchangeTicker, InstrumentState] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    # =========================================================================
    # Public API
    # =========================================================================

    async def watch(
        self,
        ticker: ExchangeTicker,
        on_update: Optional[UpdateCallback] = None,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> bool:
        """
        Start maintaining a live book for ticker.

        Watching an already watched ticker only adds the listeners.

        Args:
            ticker: Instrument to watch.
            on_update: Called with (ticker, BookView) after each change to a synced book.
            on_disconnect: Called with (ticker) when the stream disconnects.

        Returns:
            True if the instrument is (being) watched, False if subscription failed.
        """
        listener = _Listener(on_update, on_disconnect)
        state = self._states.get(ticker)
        if state is not None:
            if on_update is not None or on_disconnect is not None:
                state.listeners.append(listener)
            return True

        state = InstrumentState(ticker)
        if on_update is not None or on_disconnect is not None:
            state.listeners.append(listener)
        self._states[ticker] = state
        return await self._subscribe(state)

    async def run(self, tickers: Iterable[ExchangeTicker]) -> list[bool]:
        """Watch several instruments concurrently."""
        return list(await asyncio.gather(*(self.watch(t) for t in tickers)))

    async def unwatch(self, ticker: ExchangeTicker, timeout: Optional[float] = None) -> bool:
        """Stop watching ticker and unsubscribe its depth stream. Returns False if not watched."""
        state = self._states.pop(ticker, None)
        if state is None:
            return False
        self._cancel_snapshot(state)
        state.applying = False
        if state.subscribed:
            state.subscribed = False
            await self.client.unsubscribe_from_depth(ticker, timeout)
        return True

    def close(self):
        """Cancel background snapshot and resubscribe tasks."""
        self._closed = True
        for state in self._states.values():
            self._cancel_snapshot(state)
            state.applying = False
        for task in list(self._tasks):
            task.cancel()

    def get_book(self, ticker: ExchangeTicker) -> Optional[BookView]:
        """Current sorted book of ticker, or None while not synced."""
        state = self._states.get(ticker)
        if state is None or not state.applying:
            return None
        return state.table.view()

    def is_synced(self, ticker: ExchangeTicker) -> bool:
        state = self._states.get(ticker)
        return state is not None and state.applying

    def phase(self, ticker: ExchangeTicker) -> Optional[SyncPhase]:
        state = self._states.get(ticker)
        return state.phase if state else None

    def local_seq(self, ticker: ExchangeTicker) -> Optional[int]:
        state = self._states.get(ticker)
        return state.local_seq if state and state.applying else None

    def get_tickers(self) -> list[ExchangeTicker]:
        return list(self._states)

    def get_stats(self, ticker: ExchangeTicker) -> dict:
        state = self._states.get(ticker)
        if state is None:
            return {}
        stats = state.stats.to_dict()
        stats["phase"] = state.phase.value
        stats["local_seq"] = state.local_seq
        stats["anchor_seq"] = state.anchor_seq
        stats["pending"] = len(state.pending)
        return stats

    # =========================================================================
    # Subscription
    # =========================================================================

    async def _subscribe(self, state: InstrumentState) -> bool:
        ticker = state.ticker
        state.subscribing = True
        try:
            self._log.info("Subscribing to depth stream for %s", ticker)
            await self.client.subscribe_on_depth(_DepthHandler(self, state), ticker, self.subscribe_timeout)
        except (SubscriptionError, DuplicateSubscriptionError, SubscriptionTimeout) as e:
            self._log.error("Failed to subscribe to depth stream for %s: %s", ticker, e)
            self._drop_state(state)
            return False
        except ConnectionDropped as e:
            # Session terminated, it will not deliver this stream again
            self._log.warning("Gave up depth stream for %s: %s", ticker, e)
            self._drop_state(state)
            return False
        finally:
            state.subscribing = False

        if self._states.get(ticker) is not state:
            # Unwatched while subscribing
            self._spawn(self.client.unsubscribe_from_depth(ticker, self.subscribe_timeout))
            return False
        state.subscribed = True
        self._start_resync(state)
        return True

    def _drop_state(self, state: InstrumentState):
        if self._states.get(state.ticker) is state:
            del self._states[state.ticker]

    def _resubscribe(self, state: InstrumentState):
        if self._closed or state.subscribing or self._states.get(state.ticker) is not state:
            return
        self._spawn(self._subscribe(state))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._log.error("Background task failed: %r", task.exception())

    # =========================================================================
    # Delta stream
    # =========================================================================

    def _on_delta(self, state: InstrumentState, payload: Any):
        if self._states.get(state.ticker) is not state:
            return
        update = payload if isinstance(payload, TableUpdate) else parse_table_update(payload)

        if not state.applying:
            self._buffer(state, update)
            return

        if update.msg_ids_end <= state.local_seq:
            # Redelivery of an applied range, or older
            state.stats.deltas_skipped += 1
            self._log.debug(
                "Skipping delta [%d, %d] for %s, local %d",
                update.msg_ids_start, update.msg_ids_end, state.ticker, state.local_seq,
            )
            return

        if update.msg_ids_start > state.local_seq + 1:
            state.stats.gaps += 1
            self._log.info(
                "Missed messages for %s, resyncing snapshot. local %d arrived %d",
                state.ticker, state.local_seq, update.msg_ids_start,
            )
            self._reset(state, clear_book=True)
            self._buffer(state, update)
            self._start_resync(state)
            return

        self._apply(state, update)
        self._notify_update(state)

    def _buffer(self, state: InstrumentState, update: TableUpdate):
        """Keep only a contiguous run of deltas while unsynced."""
        pending = state.pending
        if pending:
            last = pending[-1]
            if update.msg_ids_end <= last.msg_ids_end:
                state.stats.deltas_skipped += 1
                return
            if update.msg_ids_start != last.msg_ids_end + 1:
                self._log.debug(
                    "Non-contiguous delta for %s (buffered up to %d, got %d), dropping buffer",
                    state.ticker, last.msg_ids_end, update.msg_ids_start,
                )
                state.stats.buffer_resets += 1
                pending.clear()
        pending.append(update)
        state.stats.deltas_buffered += 1
        if len(pending) > self.MAX_PENDING:
            del pending[0]

    def _apply(self, state: InstrumentState, update: TableUpdate):
        start = time.perf_counter()
        state.table.apply_update(update)
        state.local_seq = update.msg_id
        state.stats.deltas_applied += 1
        state.stats.apply_latency.record((time.perf_counter() - start) * 1000)

    def _reset(self, state: InstrumentState, clear_book: bool):
        state.applying = False
        state.pending.clear()
        state.anchor_seq = None
        if clear_book:
            state.table.clear()
            state.local_seq = 0

    # =========================================================================
    # Snapshot
    # =========================================================================

    def _start_resync(self, state: InstrumentState):
        if state.snapshot_task is not None and not state.snapshot_task.done():
            return
        state.stats.resyncs += 1
        state.snapshot_task = self._spawn(self._resync(state))

    def _cancel_snapshot(self, state: InstrumentState):
        if state.snapshot_task is not None and not state.snapshot_task.done():
            state.snapshot_task.cancel()
        state.snapshot_task = None

    async def _resync(self, state: InstrumentState):
        """Pull snapshots until one can be reconciled with the buffered deltas."""
        ticker = state.ticker
        while True:
            try:
                snapshot = await self.snapshots.get_snapshot(ticker)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                state.stats.snapshot_failures += 1
                self._log.warning("Error resetting snapshot for %s: %s", ticker, e)
                await asyncio.sleep(self.resync_cooldown)
                continue

            if self._states.get(ticker) is not state or not state.subscribed:
                return
            if self._reconcile(state, snapshot):
                self._notify_update(state)
                return

            state.stats.stale_snapshots += 1
            self._log.info(
                "Stale snapshot %d for %s, first pending delta starts at %d",
                snapshot.msg_id, ticker, state.pending[0].msg_ids_start,
            )
            await asyncio.sleep(self.resync_cooldown)

    def _reconcile(self, state: InstrumentState, snapshot: Snapshot) -> bool:
        """
        Merge a snapshot with the buffered deltas.

        Returns:
            False if the snapshot is older than the buffered deltas (stale).
        """
        seq = snapshot.msg_id
        # Ranges ending at or before seq are already reflected in the snapshot
        state.pending[:] = [u for u in state.pending if u.msg_ids_end > seq]
        if state.pending and state.pending[0].msg_ids_start > seq + 1:
            return False

        state.anchor_seq = seq
        state.table = DepthTable.from_snapshot(snapshot)
        state.local_seq = seq
        for update in state.pending:
            self._log.debug("Applying pending delta [%d, %d] for %s", update.msg_ids_start, update.msg_ids_end, state.ticker)
            self._apply(state, update)
        state.pending.clear()
        state.applying = True
        self._log.info("Synced %s at %d", state.ticker, state.local_seq)
        return True

    # =========================================================================
    # Disconnect
    # =========================================================================

    def _on_disconnect(self, state: InstrumentState):
        state.stats.disconnects += 1
        state.subscribed = False
        self._cancel_snapshot(state)
        self._reset(state, clear_book=False)
        self._log.info("Depth stream for %s disconnected", state.ticker)

        for listener in list(state.listeners):
            if listener.on_disconnect is None:
                continue
            try:
                listener.on_disconnect(state.ticker)
            except Exception:
                self._log.exception("on_disconnect callback failed for %s", state.ticker)

        if self.auto_resubscribe:
            self._resubscribe(state)

    def _notify_update(self, state: InstrumentState):
        listeners = [item for item in state.listeners if item.on_update is not None]
        if not listeners:
            return
        view = state.table.view()
        for listener in listeners:
            try:
                listener.on_update(state.ticker, view)
            except Exception:
                self._log.exception("on_update callback failed for %s", state.ticker)
