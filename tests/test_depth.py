"""Tests for the depth book synchronizer."""

import asyncio
import logging

from fakes import FakeDepthClient, FakeHttpSession, FakeSnapshotSource, delta, snapshot, wait_until

from depthbook_sdk import (
    DepthBook,
    ExchangeTicker,
    Level,
    MarketDataClient,
    SubscriptionError,
    SyncPhase,
    TradedPair,
)

ETH = ExchangeTicker(TradedPair("ETH", "USDC"))
BTC = ExchangeTicker(TradedPair("BTC", "USDC"), is_ecosystem_book=True)


def make_depth(**kwargs):
    client = FakeDepthClient()
    snapshots = FakeSnapshotSource()
    depth = DepthBook(client, snapshots, resync_cooldown=0.01, **kwargs)
    return depth, client, snapshots


async def synced_at(seq: int, bids=(), asks=(), **kwargs):
    depth, client, snapshots = make_depth(**kwargs)
    assert await depth.watch(ETH)
    snapshots.put(snapshot(seq, bids, asks))
    await wait_until(lambda: depth.is_synced(ETH))
    return depth, client, snapshots


def test_snapshot_then_delta():
    async def scenario():
        depth, client, snapshots = make_depth()
        assert await depth.watch(ETH)
        assert depth.phase(ETH) is SyncPhase.SNAPSHOTTING
        assert depth.get_book(ETH) is None

        snapshots.put(snapshot(10, bids=[(100, 5, 1)], asks=[(101, 3, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))
        assert depth.phase(ETH) is SyncPhase.SYNCED
        assert depth.local_seq(ETH) == 10

        await client.push(ETH, delta(11, bids=[(100, 0, 0)], asks=[(102, 2, 1)]))

        view = depth.get_book(ETH)
        assert view.bids == ()
        assert view.asks == (Level(101, 3, 1), Level(102, 2, 1))
        assert view.msg_id == 11
        assert depth.local_seq(ETH) == 11
        depth.close()

    asyncio.run(scenario())


def test_deltas_buffered_during_snapshot():
    """Deltas arriving before the snapshot are kept; those it covers are dropped."""

    async def scenario():
        depth, client, snapshots = make_depth()
        await depth.watch(ETH)

        await client.push(ETH, delta(9, bids=[(98, 1, 1)]))
        await client.push(ETH, delta(10, bids=[(99, 1, 1)]))
        await client.push(ETH, delta(11, bids=[(100, 0, 0)]))
        await client.push(ETH, delta(12, asks=[(105, 4, 2)]))
        assert depth.get_stats(ETH)["pending"] == 4
        assert depth.get_book(ETH) is None

        # Snapshot already reflects 9 and 10
        snapshots.put(snapshot(10, bids=[(100, 5, 1), (99, 1, 1), (98, 1, 1)], asks=[(104, 1, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))

        view = depth.get_book(ETH)
        assert view.bids == (Level(99, 1, 1), Level(98, 1, 1))
        assert view.asks == (Level(104, 1, 1), Level(105, 4, 2))
        assert depth.local_seq(ETH) == 12

        stats = depth.get_stats(ETH)
        assert stats["pending"] == 0
        assert stats["deltas_applied"] == 2
        assert stats["anchor_seq"] == 10
        depth.close()

    asyncio.run(scenario())


def test_straddling_delta_is_applied_on_reconcile():
    async def scenario():
        depth, client, snapshots = make_depth()
        await depth.watch(ETH)
        await client.push(ETH, delta(9, 11, asks=[(101, 7, 2)]))

        snapshots.put(snapshot(10, asks=[(101, 3, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))

        assert depth.get_book(ETH).asks == (Level(101, 7, 2),)
        assert depth.local_seq(ETH) == 11
        depth.close()

    asyncio.run(scenario())


def test_stale_snapshot_is_pulled_again():
    async def scenario():
        depth, client, snapshots = make_depth()
        await depth.watch(ETH)
        await client.push(ETH, delta(20, bids=[(100, 2, 1)]))

        snapshots.put(snapshot(15))
        await wait_until(lambda: depth.get_stats(ETH)["stale_snapshots"] == 1)
        assert not depth.is_synced(ETH)
        assert depth.get_book(ETH) is None

        snapshots.put(snapshot(19, bids=[(99, 1, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))

        assert len(snapshots.calls) == 2
        assert depth.local_seq(ETH) == 20
        assert depth.get_book(ETH).bids == (Level(100, 2, 1), Level(99, 1, 1))
        depth.close()

    asyncio.run(scenario())


def test_snapshot_failure_is_retried(caplog):
    caplog.set_level(logging.WARNING, logger="depthbook_sdk")

    async def scenario():
        depth, client, snapshots = make_depth()
        await depth.watch(ETH)
        snapshots.put(ConnectionError("boom"))
        snapshots.put(snapshot(3))
        await wait_until(lambda: depth.is_synced(ETH))

        assert depth.get_stats(ETH)["snapshot_failures"] == 1
        assert depth.local_seq(ETH) == 3
        depth.close()

    asyncio.run(scenario())
    assert "Error resetting snapshot" in caplog.text


def test_gap_stops_applying_until_covering_snapshot():
    async def scenario():
        depth, client, snapshots = await synced_at(0)

        await client.push(ETH, delta(1, bids=[(100, 1, 1)]))
        await client.push(ETH, delta(2, bids=[(101, 1, 1)]))
        assert depth.local_seq(ETH) == 2

        await client.push(ETH, delta(4, bids=[(104, 1, 1)]))
        assert not depth.is_synced(ETH)
        assert depth.get_book(ETH) is None
        assert depth.get_stats(ETH)["gaps"] == 1

        # A snapshot at 2 still misses 3
        snapshots.put(snapshot(2, bids=[(101, 1, 1), (100, 1, 1)]))
        await wait_until(lambda: depth.get_stats(ETH)["stale_snapshots"] == 1)
        assert not depth.is_synced(ETH)

        snapshots.put(snapshot(3, bids=[(103, 1, 1), (101, 1, 1), (100, 1, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))

        view = depth.get_book(ETH)
        assert [level.price for level in view.bids] == [104, 103, 101, 100]
        assert depth.local_seq(ETH) == 4
        depth.close()

    asyncio.run(scenario())


def test_redelivered_delta_is_a_noop():
    async def scenario():
        depth, client, snapshots = await synced_at(10, bids=[(100, 5, 1)])

        await client.push(ETH, delta(11, bids=[(100, 8, 2)]))
        before = depth.get_book(ETH)
        await client.push(ETH, delta(11, bids=[(100, 8, 2)]))
        await client.push(ETH, delta(5, bids=[(100, 1, 1)]))

        assert depth.get_book(ETH) == before
        assert depth.get_book(ETH).bids == (Level(100, 8, 2),)
        assert depth.local_seq(ETH) == 11
        assert depth.get_stats(ETH)["deltas_skipped"] == 2
        assert depth.is_synced(ETH)
        depth.close()

    asyncio.run(scenario())


def test_local_seq_never_decreases():
    async def scenario():
        depth, client, snapshots = await synced_at(0)
        seen = []
        for start, end in [(1, 1), (2, 3), (3, 3), (2, 4), (5, 6), (6, 6), (7, 7)]:
            await client.push(ETH, delta(start, end))
            seen.append(depth.local_seq(ETH))
        assert seen == sorted(seen)
        assert seen[-1] == 7
        depth.close()

    asyncio.run(scenario())


def test_non_contiguous_buffer_starts_over():
    async def scenario():
        depth, client, snapshots = make_depth()
        await depth.watch(ETH)
        await client.push(ETH, delta(5))
        await client.push(ETH, delta(6))
        await client.push(ETH, delta(9, asks=[(110, 1, 1)]))

        stats = depth.get_stats(ETH)
        assert stats["pending"] == 1
        assert stats["buffer_resets"] == 1

        snapshots.put(snapshot(8))
        await wait_until(lambda: depth.is_synced(ETH))
        assert depth.local_seq(ETH) == 9
        assert depth.get_book(ETH).asks == (Level(110, 1, 1),)
        depth.close()

    asyncio.run(scenario())


def test_disconnect_notifies_and_resubscribes():
    async def scenario():
        disconnected = []
        depth, client, snapshots = make_depth()
        await depth.watch(ETH, on_disconnect=disconnected.append)
        snapshots.put(snapshot(10, bids=[(100, 5, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))

        await client.disconnect()
        assert disconnected == [ETH]
        assert depth.get_book(ETH) is None
        assert depth.get_stats(ETH)["disconnects"] == 1

        await wait_until(lambda: len(client.subscribe_calls) == 2)
        snapshots.put(snapshot(20, bids=[(100, 6, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))
        assert depth.get_book(ETH).bids == (Level(100, 6, 1),)
        assert disconnected == [ETH]
        depth.close()

    asyncio.run(scenario())


def test_disconnect_without_auto_resubscribe():
    async def scenario():
        depth, client, snapshots = await synced_at(1, auto_resubscribe=False)
        await client.disconnect()
        await asyncio.sleep(0.02)
        assert client.subscribe_calls == [ETH]
        assert depth.phase(ETH) is SyncPhase.UNSYNCED
        assert depth.get_book(ETH) is None

    asyncio.run(scenario())


def test_rejected_subscription_is_logged(caplog):
    caplog.set_level(logging.ERROR, logger="depthbook_sdk")

    async def scenario():
        depth, client, snapshots = make_depth()
        client.fail_with = SubscriptionError("unknown pair")
        assert await depth.watch(ETH) is False
        assert depth.get_tickers() == []
        assert depth.get_book(ETH) is None
        assert snapshots.calls == []

        # The caller may retry
        client.fail_with = None
        assert await depth.watch(ETH) is True
        depth.close()

    asyncio.run(scenario())
    assert "Failed to subscribe to depth stream" in caplog.text


def test_watch_is_idempotent():
    async def scenario():
        first, second = [], []
        depth, client, snapshots = make_depth()
        assert await depth.watch(ETH, on_update=lambda t, v: first.append(v.msg_id))
        assert await depth.watch(ETH, on_update=lambda t, v: second.append(v.msg_id))
        assert client.subscribe_calls == [ETH]

        snapshots.put(snapshot(3))
        await wait_until(lambda: depth.is_synced(ETH))
        await client.push(ETH, delta(4))

        assert first == [3, 4]
        assert second == [3, 4]
        depth.close()

    asyncio.run(scenario())


def test_listener_errors_do_not_break_sync(caplog):
    def broken(ticker, view):
        raise RuntimeError("listener bug")

    async def scenario():
        depth, client, snapshots = make_depth()
        await depth.watch(ETH, on_update=broken)
        snapshots.put(snapshot(1))
        await wait_until(lambda: depth.is_synced(ETH))
        await client.push(ETH, delta(2))
        assert depth.local_seq(ETH) == 2
        depth.close()

    asyncio.run(scenario())
    assert "on_update callback failed" in caplog.text


def test_instruments_are_independent():
    async def scenario():
        depth, client, snapshots = make_depth()
        assert await depth.run([ETH, BTC]) == [True, True]
        assert set(depth.get_tickers()) == {ETH, BTC}

        snapshots.put(snapshot(5))
        snapshots.put(snapshot(50))
        await wait_until(lambda: depth.is_synced(ETH) and depth.is_synced(BTC))

        await client.push(BTC, delta(60))
        assert not depth.is_synced(BTC)
        assert depth.is_synced(ETH)
        depth.close()

    asyncio.run(scenario())


def test_unwatch():
    async def scenario():
        depth, client, snapshots = await synced_at(1)
        assert await depth.unwatch(ETH) is True
        assert client.unsubscribed == [ETH]
        assert depth.get_book(ETH) is None
        assert depth.get_tickers() == []
        assert await depth.unwatch(ETH) is False

    asyncio.run(scenario())


def depth_push(ticker: ExchangeTicker, payload: dict) -> dict:
    return {
        "stream": "snap",
        "pair": {"base": ticker.pair.base, "quote": ticker.pair.quote},
        "ecosystem": ticker.is_ecosystem_book,
        "result": payload,
    }


async def start_market_depth(**kwargs):
    http = FakeHttpSession()
    client = MarketDataClient(ws_url="wss://test/ws", repeat_cooldown=0.01, session_factory=lambda: http, **kwargs)
    task = asyncio.create_task(client.connect())
    assert await client.wait_connected(timeout=1)
    snapshots = FakeSnapshotSource()
    depth = DepthBook(client, snapshots, resync_cooldown=0.01)
    return depth, client, snapshots, http, task


def test_resync_after_socket_drop_through_client():
    async def scenario():
        disconnected = []
        depth, client, snapshots, http, task = await start_market_depth()
        assert await depth.watch(ETH, on_disconnect=disconnected.append)
        assert http.ws.sent[0]["stream"] == "snap"
        snapshots.put(snapshot(10, bids=[(100, 5, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))

        http.ws.push(depth_push(ETH, delta(11, asks=[(101, 2, 1)])))
        await wait_until(lambda: depth.local_seq(ETH) == 11)
        assert depth.get_book(ETH).asks == (Level(101, 2, 1),)

        first = http.ws
        first.drop()
        await wait_until(lambda: disconnected == [ETH])
        assert depth.get_stats(ETH)["disconnects"] == 1
        assert depth.get_book(ETH) is None

        # Resubscribed on the new socket once the client reconnects
        await wait_until(lambda: http.ws is not first and any(m.get("stream") == "snap" for m in http.ws.sent))
        snapshots.put(snapshot(20, bids=[(100, 6, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))
        assert depth.local_seq(ETH) == 20

        http.ws.push(depth_push(ETH, delta(21, bids=[(99, 1, 1)])))
        await wait_until(lambda: depth.local_seq(ETH) == 21)
        assert depth.get_book(ETH).bids == (Level(100, 6, 1), Level(99, 1, 1))
        assert disconnected == [ETH]

        depth.close()
        await client.close()
        await asyncio.wait_for(task, 1)

    asyncio.run(scenario())


def test_gives_up_resubscribe_when_client_stops(caplog):
    caplog.set_level(logging.WARNING, logger="depthbook_sdk")

    async def scenario():
        depth, client, snapshots, http, task = await start_market_depth(should_reconnect=False)
        assert await depth.watch(ETH)
        snapshots.put(snapshot(10, bids=[(100, 5, 1)]))
        await wait_until(lambda: depth.is_synced(ETH))

        http.ws.drop()
        await asyncio.wait_for(task, 1)
        await wait_until(lambda: depth.get_tickers() == [])
        assert len(http.sockets) == 1
        assert depth.get_book(ETH) is None
        depth.close()

    asyncio.run(scenario())
    assert "Gave up depth stream" in caplog.text
