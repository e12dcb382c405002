"""Feed session and frame decoding."""

from .decode import PayloadVariant, decode_frame, extract_ltp, parse_frame
from .session import FeedSession, default_connect

__all__ = [
    "PayloadVariant",
    "decode_frame",
    "extract_ltp",
    "parse_frame",
    "FeedSession",
    "default_connect",
]
