"""Exceptions raised by the chainfeed ingestion pipeline."""


class IngestError(Exception):
    """Base exception for chainfeed errors."""
    pass


class ConfigurationError(IngestError):
    """Raised when configuration is missing or invalid."""
    pass


class ParseError(IngestError):
    """Raised when the instrument master cannot be parsed. Fatal at startup."""
    pass


class AuthError(IngestError):
    """Raised when the feed authorization exchange yields no usable redirect URL."""
    pass


class NotFoundError(IngestError):
    """Raised when no expiry or no instruments match the requested window."""
    pass


class DataMissingError(IngestError):
    """Raised when a REST response lacks the expected value (e.g. spot LTP)."""
    pass


class TransportError(IngestError):
    """Raised when a network connection fails or is lost."""
    pass


class DecodeError(IngestError):
    """Raised when a single feed frame cannot be decoded. Recovered locally."""
    pass


class SinkError(IngestError):
    """Raised when the tick sink rejects a batch. Logged, never fatal."""
    pass
