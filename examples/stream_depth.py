#!/usr/bin/env python3
"""
Example: Keep live depth books in sync with the async API.

Usage:
    uv run examples/stream_depth.py                 # Default: ETH/USDC
    uv run examples/stream_depth.py ETH/USDC BTC/USDC
    uv run examples/stream_depth.py ETH/USDC@eco    # Ecosystem book

Environment:
    DEPTHBOOK_WS_URL: Websocket URL
    DEPTHBOOK_API_URL: REST URL for snapshots
"""

import asyncio
import logging
import sys

from depthbook_sdk import (
    BookView,
    DepthBook,
    DepthBookError,
    ExchangeTicker,
    MarketDataClient,
    SnapshotHttpClient,
    TradedPair,
)


def parse_ticker(arg: str) -> ExchangeTicker:
    pair, _, book = arg.partition("@")
    base, quote = pair.upper().split("/")
    return ExchangeTicker(TradedPair(base, quote), is_ecosystem_book=book == "eco")


def make_printer(depth: DepthBook):
    def on_update(ticker: ExchangeTicker, view: BookView):
        # Print every 50th sequence number
        if view.msg_id % 50 == 0:
            stats = depth.get_stats(ticker)
            print(
                f"{ticker}: bid={view.best_bid()} ask={view.best_ask()} spread={view.spread()} "
                f"levels={len(view.bids)}b/{len(view.asks)}a seq={view.msg_id} "
                f"gaps={stats['gaps']} apply={stats['apply_latency_avg_ms']:.3f}ms"
            )

    return on_update


def on_disconnect(ticker: ExchangeTicker):
    print(f"{ticker}: disconnected, resyncing")


async def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    args = sys.argv[1:] or ["ETH/USDC"]
    tickers = [parse_ticker(arg) for arg in args]

    client = MarketDataClient()
    depth = DepthBook(client, SnapshotHttpClient())
    print(f"Connecting to {client.ws_url}...")

    connect_task = asyncio.create_task(client.connect())
    try:
        on_update = make_printer(depth)
        for ticker in tickers:
            if not await depth.watch(ticker, on_update=on_update, on_disconnect=on_disconnect):
                print(f"Could not subscribe to {ticker}")
        await connect_task
    except DepthBookError as e:
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        depth.close()
        await client.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown")
