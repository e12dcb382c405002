"""Decode feed frames into normalized ticks."""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from google.protobuf.message import DecodeError as ProtobufDecodeError

from ..errors import DecodeError
from ..types import Tick
from .schema import FeedResponse


class PayloadVariant(Enum):
    """Shapes in which a feed entry can carry its LTPC block."""
    LTPC = "ltpc"
    MARKET_FULL = "fullFeed.marketFF.ltpc"
    INDEX_FULL = "fullFeed.indexFF.ltpc"
    FIRST_LEVEL_GREEKS = "firstLevelWithGreeks.ltpc"


def _ltpc_direct(feed):
    return feed.ltpc if feed.HasField("ltpc") else None


def _ltpc_market_full(feed):
    if feed.HasField("fullFeed") and feed.fullFeed.HasField("marketFF"):
        market = feed.fullFeed.marketFF
        if market.HasField("ltpc"):
            return market.ltpc
    return None


def _ltpc_index_full(feed):
    if feed.HasField("fullFeed") and feed.fullFeed.HasField("indexFF"):
        index = feed.fullFeed.indexFF
        if index.HasField("ltpc"):
            return index.ltpc
    return None


def _ltpc_first_level(feed):
    if feed.HasField("firstLevelWithGreeks"):
        first = feed.firstLevelWithGreeks
        if first.HasField("ltpc"):
            return first.ltpc
    return None


# Tried in this order; the first usable price wins.
VARIANT_DECODERS: Tuple[Tuple[PayloadVariant, Callable], ...] = (
    (PayloadVariant.LTPC, _ltpc_direct),
    (PayloadVariant.MARKET_FULL, _ltpc_market_full),
    (PayloadVariant.INDEX_FULL, _ltpc_index_full),
    (PayloadVariant.FIRST_LEVEL_GREEKS, _ltpc_first_level),
)


def normalize_instrument_key(key: str) -> str:
    """Vendor responses sometimes spell 'NSE_INDEX|Nifty 50' as 'NSE_INDEX:Nifty 50'."""
    if "|" not in key and ":" in key:
        return key.replace(":", "|", 1)
    return key


def usable_price(value: float) -> bool:
    """Zero, negative and non-finite prices are treated as absent."""
    return math.isfinite(value) and value > 0


def extract_ltp(feed) -> Optional[Tuple[PayloadVariant, float]]:
    """Return (variant, ltp) for the first variant with a usable price, else None."""
    for variant, decoder in VARIANT_DECODERS:
        ltpc = decoder(feed)
        if ltpc is not None and usable_price(ltpc.ltp):
            return variant, ltpc.ltp
    return None


def parse_frame(raw) -> "FeedResponse":
    """
    Parse one binary frame.
    
    Raises:
        DecodeError: For text frames and bytes that are not a FeedResponse.
    """
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise DecodeError(f"expected a binary frame, got {type(raw).__name__}")
    
    response = FeedResponse()
    try:
        response.ParseFromString(bytes(raw))
    except ProtobufDecodeError as e:
        raise DecodeError(f"invalid feed frame ({len(raw)} bytes): {e}") from e
    return response


def _frame_time(current_ts: int) -> Optional[datetime]:
    """Frame timestamp as UTC datetime; None when unset or out of range."""
    if current_ts <= 0:
        return None
    try:
        return datetime.fromtimestamp(current_ts / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def decode_frame(
    raw,
    spot_price: Optional[float] = None,
    received_at: Optional[datetime] = None,
) -> List[Tick]:
    """
    Decode a frame into zero or more ticks.
    
    Args:
        raw: Binary frame payload
        spot_price: Underlying spot attached to every tick
        received_at: Local receive time, used when the frame has no usable currentTs
    
    Raises:
        DecodeError: If the frame cannot be parsed.
    """
    response = parse_frame(raw)
    
    observed_at = _frame_time(response.currentTs) or received_at or datetime.now(timezone.utc)
    
    ticks = []
    for key, feed in response.feeds.items():
        hit = extract_ltp(feed)
        if hit is None:
            continue
        _, ltp = hit
        ticks.append(Tick(
            instrument_key=normalize_instrument_key(key),
            last_traded_price=ltp,
            spot_price=spot_price,
            observed_at=observed_at,
        ))
    return ticks
