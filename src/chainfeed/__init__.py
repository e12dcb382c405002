"""chainfeed - live option-chain tick ingestion around the ATM strike."""

from .config import IngestConfig
from .errors import (
    IngestError,
    ConfigurationError,
    ParseError,
    AuthError,
    NotFoundError,
    DataMissingError,
    TransportError,
    DecodeError,
    SinkError,
)
from .types import (
    Instrument,
    InstrumentType,
    Segment,
    StrikeWindow,
    Subscription,
    Tick,
    FeedSessionState,
    SessionOutcome,
    SupervisorState,
)

__version__ = "0.1.0"

__all__ = [
    "IngestConfig",
    # Errors
    "IngestError",
    "ConfigurationError",
    "ParseError",
    "AuthError",
    "NotFoundError",
    "DataMissingError",
    "TransportError",
    "DecodeError",
    "SinkError",
    # Types
    "Instrument",
    "InstrumentType",
    "Segment",
    "StrikeWindow",
    "Subscription",
    "Tick",
    "FeedSessionState",
    "SessionOutcome",
    "SupervisorState",
]
