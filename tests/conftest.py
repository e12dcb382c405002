"""Shared fixtures: instrument master rows, fake transports and sinks."""

import asyncio
from datetime import datetime, timedelta, timezone

import orjson
import pytest
from websockets.protocol import State

from chainfeed.catalog import InstrumentCatalog
from chainfeed.errors import SinkError

NOW = datetime(2026, 1, 20, 4, 0, tzinfo=timezone.utc)
EXPIRY_NEAR = datetime(2026, 1, 27, 10, 0, tzinfo=timezone.utc)
EXPIRY_FAR = datetime(2026, 2, 3, 10, 0, tzinfo=timezone.utc)
EXPIRY_PAST = datetime(2026, 1, 13, 10, 0, tzinfo=timezone.utc)


def epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def option_row(strike, opt_type, expiry, underlying="NIFTY", segment="NSE_FO"):
    exp_tag = expiry.strftime("%y%m%d")
    return {
        "segment": segment,
        "name": underlying,
        "exchange": segment.split("_")[0],
        "expiry": epoch_ms(expiry),
        "instrument_type": opt_type,
        "instrument_key": f"{segment}|{underlying}{exp_tag}{int(strike)}{opt_type}",
        "strike_price": float(strike),
        "underlying_symbol": underlying,
        "trading_symbol": f"{underlying} {int(strike)} {opt_type} {exp_tag}",
        "lot_size": 75,
    }


def chain_rows(strikes, expiries, underlying="NIFTY"):
    rows = []
    for expiry in expiries:
        for strike in strikes:
            for opt_type in ("CE", "PE"):
                rows.append(option_row(strike, opt_type, expiry, underlying))
    return rows


def master_rows():
    """NIFTY chain 24800..25300 for three expiries, plus index/future/equity rows."""
    strikes = range(24800, 25301, 50)
    rows = chain_rows(strikes, [EXPIRY_PAST, EXPIRY_NEAR, EXPIRY_FAR])
    rows.append({
        "segment": "NSE_INDEX",
        "name": "Nifty 50",
        "instrument_type": "INDEX",
        "instrument_key": "NSE_INDEX|Nifty 50",
        "trading_symbol": "NIFTY",
    })
    rows.append({
        "segment": "NSE_FO",
        "name": "NIFTY",
        "underlying_symbol": "NIFTY",
        "instrument_type": "FUT",
        "instrument_key": "NSE_FO|NIFTYFUT",
        "expiry": epoch_ms(EXPIRY_NEAR),
        "lot_size": 75,
    })
    rows.append({
        "segment": "NSE_EQ",
        "name": "RELIANCE INDUSTRIES LTD",
        "instrument_type": "EQ",
        "instrument_key": "NSE_EQ|INE002A01018",
    })
    return rows


@pytest.fixture
def master_bytes():
    return orjson.dumps(master_rows())


@pytest.fixture
def catalog(master_bytes):
    return InstrumentCatalog.load(master_bytes)


class RecordingSink:
    """Sink that keeps every batch; can be told to reject writes."""
    
    def __init__(self, fail: bool = False):
        self.batches = []
        self.fail = fail
    
    def write(self, batch):
        if self.fail:
            raise SinkError("disk full")
        self.batches.append(list(batch))
    
    @property
    def ticks(self):
        return [t for batch in self.batches for t in batch]


_CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""
    
    def __init__(self, frames=()):
        self.sent = []
        self.pings = 0
        self.state = State.OPEN
        self.close_code = None
        self._queue = asyncio.Queue()
        for frame in frames:
            self._queue.put_nowait(frame)
    
    def push(self, frame) -> None:
        self._queue.put_nowait(frame)
    
    def fail(self, exc: BaseException) -> None:
        self._queue.put_nowait(exc)
    
    def remote_close(self, code: int = 1000) -> None:
        self.state = State.CLOSED
        self.close_code = code
        self._queue.put_nowait(_CLOSE)
    
    async def send(self, message) -> None:
        self.sent.append(message)
    
    async def ping(self) -> None:
        assert self.state is State.OPEN, "ping on a transport that is not open"
        self.pings += 1
    
    async def close(self, code: int = 1000) -> None:
        if self.state is State.CLOSED:
            return
        self.state = State.CLOSED
        self.close_code = code
        self._queue.put_nowait(_CLOSE)
    
    def __aiter__(self):
        return self
    
    async def __anext__(self):
        item = await self._queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self.state = State.CLOSED
            raise item
        return item


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate on the event loop until it holds."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout)
