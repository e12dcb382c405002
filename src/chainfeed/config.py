"""Configuration for the chainfeed ingestor."""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError
from .types import Segment

DEFAULT_AUTHORIZE_URL = "https://api.upstox.com/v3/feed/market-data-feed/authorize"
DEFAULT_LTP_URL = "https://api.upstox.com/v3/market-quote/ltp"
DEFAULT_CATALOG_URL = (
    "https://assets.upstox.com/market-quote/instruments/exchange/complete.json.gz"
)


def _decimal_env(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _number_env(name: str, default: str, cast=float):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


@dataclass
class IngestConfig:
    """
    Configuration container for the ingestor.
    
    Loaded from environment variables with sensible defaults for the
    NIFTY weekly option chain.
    """
    # Vendor credentials
    access_token: str = ""
    
    # Underlying and strike window
    underlying: str = "NIFTY"
    segment: str = "NSE_FO"
    spot_instrument_key: str = "NSE_INDEX|Nifty 50"
    strike_gap: Decimal = Decimal("50")
    strike_range: int = 10
    drift_threshold: Optional[Decimal] = None  # Defaults to strike_gap
    
    # Feed session
    feed_mode: str = "ltp"
    feed_method: str = "subscribe"
    heartbeat_interval_seconds: float = 20.0
    
    # Supervisor
    drift_probe_interval_seconds: float = 30.0
    restart_delay_seconds: float = 5.0
    
    # Endpoints
    authorize_url: str = DEFAULT_AUTHORIZE_URL
    ltp_url: str = DEFAULT_LTP_URL
    catalog_url: str = DEFAULT_CATALOG_URL
    catalog_path: Optional[Path] = None  # Local master file, skips the download
    catalog_max_age_seconds: float = 24 * 60 * 60
    
    # Storage and status
    data_dir: Path = Path("./data")
    status_interval_seconds: float = 60.0
    
    # Logging
    log_level: str = "INFO"
    
    @property
    def effective_drift_threshold(self) -> Decimal:
        """Drift threshold, falling back to one strike gap."""
        if self.drift_threshold is None:
            return self.strike_gap
        return self.drift_threshold
    
    @property
    def segment_enum(self) -> Segment:
        return Segment(self.segment)
    
    @classmethod
    def from_env(cls) -> "IngestConfig":
        """Load configuration from environment variables."""
        drift_raw = os.getenv("DRIFT_THRESHOLD")
        catalog_path = os.getenv("CATALOG_PATH")
        
        return cls(
            access_token=os.getenv("UPSTOX_ACCESS_TOKEN", ""),
            underlying=os.getenv("UNDERLYING", "NIFTY"),
            segment=os.getenv("SEGMENT", "NSE_FO"),
            spot_instrument_key=os.getenv("SPOT_INSTRUMENT_KEY", "NSE_INDEX|Nifty 50"),
            strike_gap=_decimal_env("STRIKE_GAP", "50"),
            strike_range=_number_env("STRIKE_RANGE", "10", int),
            drift_threshold=_decimal_env("DRIFT_THRESHOLD", drift_raw) if drift_raw else None,
            feed_mode=os.getenv("FEED_MODE", "ltp"),
            feed_method=os.getenv("FEED_METHOD", "subscribe"),
            heartbeat_interval_seconds=_number_env("HEARTBEAT_INTERVAL_SECONDS", "20"),
            drift_probe_interval_seconds=_number_env("DRIFT_PROBE_INTERVAL_SECONDS", "30"),
            restart_delay_seconds=_number_env("RESTART_DELAY_SECONDS", "5"),
            authorize_url=os.getenv("AUTHORIZE_URL", DEFAULT_AUTHORIZE_URL),
            ltp_url=os.getenv("LTP_URL", DEFAULT_LTP_URL),
            catalog_url=os.getenv("CATALOG_URL", DEFAULT_CATALOG_URL),
            catalog_path=Path(catalog_path) if catalog_path else None,
            catalog_max_age_seconds=_number_env("CATALOG_MAX_AGE_SECONDS", "86400"),
            data_dir=Path(os.getenv("INGEST_DATA_DIR", "./data")),
            status_interval_seconds=_number_env("STATUS_INTERVAL_SECONDS", "60"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
    
    def validate(self) -> None:
        """Validate configuration values."""
        if not self.access_token:
            raise ConfigurationError("UPSTOX_ACCESS_TOKEN is not set")
        
        if not self.underlying:
            raise ConfigurationError("underlying must not be empty")
        
        try:
            Segment(self.segment)
        except ValueError:
            raise ConfigurationError(f"unknown segment: {self.segment}")
        
        if self.strike_gap <= 0:
            raise ConfigurationError("strike_gap must be positive")
        
        if self.strike_range < 0:
            raise ConfigurationError("strike_range must not be negative")
        
        if self.effective_drift_threshold <= 0:
            raise ConfigurationError("drift_threshold must be positive")
        
        for name in (
            "heartbeat_interval_seconds",
            "drift_probe_interval_seconds",
            "status_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        
        if self.restart_delay_seconds < 0:
            raise ConfigurationError("restart_delay_seconds must not be negative")
