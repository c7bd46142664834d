"""Websocket frame and depth payload parsing."""

import json
from typing import Any, Union

from ..orderbook.book import Level, Snapshot, TableUpdate


def decode_frame(raw: Union[str, bytes]) -> dict:
    """Decode a text or UTF-8 binary frame into a JSON object."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"Expected JSON object, got {type(data).__name__}")
    return data


def to_int(value: Any) -> int:
    """Parse int, decimal string or 0x-hex string."""
    if isinstance(value, bool):
        raise ValueError("Boolean is not a number")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.lower().startswith("0x"):
            return int(value, 16)
        return int(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise ValueError(f"Cannot parse {value!r} as integer")


def parse_levels(raw: list) -> list[Level]:
    """
    Parse a side of levels.

    Each level is either [price, volume, orders] or
    {"price": ..., "volume": ..., "orders": ...}.
    """
    levels = []
    for item in raw or []:
        if isinstance(item, dict):
            price, volume, orders = item["price"], item["volume"], item.get("orders", 0)
        else:
            price, volume = item[0], item[1]
            orders = item[2] if len(item) > 2 else 0
        levels.append(Level(to_int(price), to_int(volume), to_int(orders)))
    return levels


def parse_table_update(payload: dict) -> TableUpdate:
    """Parse a book delta push payload."""
    start = to_int(payload["msg_ids_start"])
    end = to_int(payload["msg_ids_end"])
    if end < start:
        raise ValueError(f"Invalid delta range [{start}, {end}]")
    return TableUpdate(
        msg_ids_start=start,
        msg_ids_end=end,
        msg_id=to_int(payload.get("msg_id", end)),
        bids=parse_levels(payload.get("bids", [])),
        asks=parse_levels(payload.get("asks", [])),
    )


def parse_snapshot(payload: dict) -> Snapshot:
    """
    Parse a book snapshot.

    Accepts either {"levels": {"bids", "asks", "msg_id"}, "time"} or a flat
    {"bids", "asks", "msg_id"} object.
    """
    levels = payload.get("levels", payload)
    msg_id = levels.get("msg_id", payload.get("msg_id"))
    if msg_id is None:
        raise ValueError("Snapshot has no msg_id")
    return Snapshot(
        bids=parse_levels(levels.get("bids", [])),
        asks=parse_levels(levels.get("asks", [])),
        msg_id=to_int(msg_id),
        time=payload.get("time"),
    )
