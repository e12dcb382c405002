"""Type definitions for the option-chain ingestion pipeline."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Optional


class InstrumentType(Enum):
    """Instrument types the pipeline understands."""
    CALL = auto()
    PUT = auto()
    INDEX = auto()
    FUTURE = auto()


class Segment(Enum):
    """Exchange segments as spelled in the vendor instrument master."""
    NSE_FO = "NSE_FO"
    BSE_FO = "BSE_FO"
    NSE_INDEX = "NSE_INDEX"
    BSE_INDEX = "BSE_INDEX"
    NSE_EQ = "NSE_EQ"
    BSE_EQ = "BSE_EQ"
    MCX_FO = "MCX_FO"
    NCD_FO = "NCD_FO"
    BCD_FO = "BCD_FO"


class FeedSessionState(Enum):
    """Feed session lifecycle states.
    
    IDLE: Constructed, not started.
    AUTHORIZING: Waiting on the authorization exchange for a redirect URL.
    CONNECTED: Transport open, subscription not yet sent.
    SUBSCRIBED: Subscription sent; frames are decoded and sunk.
    CLOSING: Clean or forced close. Terminal.
    FAILED: Authorization or transport error. Terminal.
    """
    IDLE = auto()
    AUTHORIZING = auto()
    CONNECTED = auto()
    SUBSCRIBED = auto()
    CLOSING = auto()
    FAILED = auto()
    
    @property
    def terminal(self) -> bool:
        return self in (FeedSessionState.CLOSING, FeedSessionState.FAILED)


@dataclass(frozen=True, slots=True)
class Instrument:
    """
    One row of the instrument master.
    
    INDEX rows carry no expiry or strike.
    """
    key: str
    underlying: str
    segment: Segment
    type: InstrumentType
    expiry: Optional[datetime] = None  # UTC
    strike_price: Optional[Decimal] = None


@dataclass(frozen=True, slots=True)
class StrikeWindow:
    """Symmetric set of strikes around the ATM strike."""
    atm: Decimal
    gap: Decimal
    range: int
    strikes: tuple[Decimal, ...]
    
    def __post_init__(self):
        if len(self.strikes) != 2 * self.range + 1:
            raise ValueError(
                f"expected {2 * self.range + 1} strikes, got {len(self.strikes)}"
            )
        if any(b <= a for a, b in zip(self.strikes, self.strikes[1:])):
            raise ValueError("strikes must be strictly increasing")
        if self.strikes[self.range] != self.atm:
            raise ValueError("strikes must be centered on atm")


@dataclass(frozen=True, slots=True)
class Subscription:
    """Instrument keys for one expiry, as handed to a FeedSession."""
    expiry: datetime
    instrument_keys: tuple[str, ...]
    
    def __post_init__(self):
        if not self.instrument_keys:
            raise ValueError("subscription must contain at least one instrument key")
        if len(set(self.instrument_keys)) != len(self.instrument_keys):
            raise ValueError("subscription contains duplicate instrument keys")


@dataclass(frozen=True, slots=True)
class Tick:
    """
    Normalized last-traded-price update for one instrument.
    
    Created by the decoder and handed straight to the sink.
    """
    instrument_key: str
    last_traded_price: float
    spot_price: Optional[float]
    observed_at: datetime  # UTC
    
    def to_row(self) -> dict:
        """Flatten into a sink row (timestamps in epoch ms)."""
        return {
            "instrument_key": self.instrument_key,
            "ltp": self.last_traded_price,
            "spot": self.spot_price,
            "ts_observed": int(self.observed_at.timestamp() * 1000),
        }


@dataclass(slots=True)
class SessionOutcome:
    """How a FeedSession ended."""
    state: FeedSessionState
    reason: str = ""
    close_code: Optional[int] = None
    error: Optional[BaseException] = None


@dataclass(slots=True)
class SupervisorState:
    """
    Process-wide ingestion state, owned by ReconnectSupervisor.
    
    Every restart replaces active_session and re-derives the other fields.
    """
    current_atm: Optional[Decimal] = None
    current_spot: Optional[Decimal] = None
    current_expiry: Optional[datetime] = None
    active_session: Optional[Any] = None
    instrument_count: int = 0
    restart_count: int = 0
    last_error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
