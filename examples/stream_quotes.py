#!/usr/bin/env python3
"""
Print best bid/ask of live depth books from a plain (non-async) script.

Usage:
    uv run examples/stream_quotes.py
    uv run examples/stream_quotes.py ETH/USDC BTC/USDC

Environment:
    DEPTHBOOK_WS_URL: Websocket URL
    DEPTHBOOK_API_URL: REST URL for snapshots
"""

import sys
import time

from depthbook_sdk import DepthBookStream, ExchangeTicker, TradedPair


def main():
    args = sys.argv[1:] if len(sys.argv) > 1 else ["ETH/USDC"]
    tickers = []
    for arg in args:
        base, quote = arg.upper().split("/")
        tickers.append(ExchangeTicker(TradedPair(base, quote)))
    print(f"Streaming: {', '.join(str(t) for t in tickers)}\n")

    with DepthBookStream(tickers=tickers) as stream:
        while True:
            for ticker in tickers:
                view = stream.get_book(ticker)
                if view is None:
                    print(f"{ticker}: resyncing...")
                    continue
                print(f"{ticker}: {view.best_bid()} / {view.best_ask()}  spread: {view.spread()}  "
                      f"mid: {view.mid_price()}")
                stats = stream.get_stats(ticker)
                print(f"  seq: {view.msg_id}  resyncs: {stats['resyncs']}  "
                      f"apply={stats['apply_latency_avg_ms']:.3f}ms")
            print("-" * 50)
            time.sleep(1)


if __name__ == "__main__":
    main()
