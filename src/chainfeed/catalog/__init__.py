"""Instrument master, strike window arithmetic and instrument resolution."""

from .instruments import InstrumentCatalog, parse_instrument, OPTION_TYPES
from .strikes import compute_atm, generate_window, has_drifted
from .resolver import nearest_future_expiry, resolve_keys, resolve_subscription

__all__ = [
    "InstrumentCatalog",
    "parse_instrument",
    "OPTION_TYPES",
    "compute_atm",
    "generate_window",
    "has_drifted",
    "nearest_future_expiry",
    "resolve_keys",
    "resolve_subscription",
]
