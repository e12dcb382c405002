"""Instrument master parsing and queries."""

import gzip
import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import orjson

from ..errors import ParseError
from ..types import Instrument, InstrumentType, Segment

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"

# Vendor instrument_type -> InstrumentType. Anything else (EQ, commodities) is skipped.
INSTRUMENT_TYPES = {
    "CE": InstrumentType.CALL,
    "PE": InstrumentType.PUT,
    "INDEX": InstrumentType.INDEX,
    "FUT": InstrumentType.FUTURE,
}

OPTION_TYPES = (InstrumentType.CALL, InstrumentType.PUT)


def _expiry_from_ms(value, key: str) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"{key}: expiry must be epoch milliseconds, got {value!r}")
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _strike(value, key: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ParseError(f"{key}: missing strike_price")
    try:
        # str() first so 24950.0 becomes Decimal("24950.0"), not a binary expansion
        return Decimal(str(value))
    except InvalidOperation:
        raise ParseError(f"{key}: invalid strike_price {value!r}")


def parse_instrument(entry: dict) -> Optional[Instrument]:
    """
    Parse one instrument master row.
    
    Returns:
        Instrument, or None for rows outside the supported segments/types.
    
    Raises:
        ParseError: If a supported row is missing required fields.
    """
    key = entry.get("instrument_key")
    if not isinstance(key, str) or not key:
        raise ParseError(f"entry without instrument_key: {entry!r}")
    
    try:
        segment = Segment(entry.get("segment"))
    except ValueError:
        return None
    
    inst_type = INSTRUMENT_TYPES.get(entry.get("instrument_type"))
    if inst_type is None:
        return None
    
    underlying = entry.get("underlying_symbol") or entry.get("name")
    if not isinstance(underlying, str) or not underlying:
        raise ParseError(f"{key}: missing underlying_symbol")
    
    expiry = None
    strike = None
    if inst_type in OPTION_TYPES:
        if "expiry" not in entry:
            raise ParseError(f"{key}: option without expiry")
        expiry = _expiry_from_ms(entry["expiry"], key)
        strike = _strike(entry.get("strike_price"), key)
    elif entry.get("expiry") is not None:
        expiry = _expiry_from_ms(entry["expiry"], key)
    
    return Instrument(
        key=key,
        underlying=underlying.upper(),
        segment=segment,
        type=inst_type,
        expiry=expiry,
        strike_price=strike,
    )


class InstrumentCatalog:
    """
    In-memory instrument master, indexed by (underlying, segment).
    
    Read-only after construction. Instruments keep the order in which
    they appeared in the master.
    """
    
    def __init__(self, instruments: Iterable[Instrument], loaded_at: Optional[datetime] = None):
        self._instruments: List[Instrument] = []
        self._by_key: Dict[str, Instrument] = {}
        self._index: Dict[Tuple[str, Segment], List[Instrument]] = defaultdict(list)
        self.loaded_at = loaded_at or datetime.now(timezone.utc)
        
        for inst in instruments:
            if inst.key in self._by_key:
                raise ParseError(f"duplicate instrument_key: {inst.key}")
            self._instruments.append(inst)
            self._by_key[inst.key] = inst
            self._index[(inst.underlying, inst.segment)].append(inst)
    
    @classmethod
    def load(cls, raw: bytes) -> "InstrumentCatalog":
        """
        Parse a plain or gzip-compressed JSON array instrument master.
        
        Raises:
            ParseError: On any malformed input. The catalog never partially loads.
        """
        if raw[:2] == GZIP_MAGIC:
            try:
                raw = gzip.decompress(raw)
            except (OSError, EOFError) as e:
                raise ParseError(f"corrupt gzip instrument master: {e}") from e
        
        try:
            entries = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise ParseError(f"instrument master is not valid JSON: {e}") from e
        
        if not isinstance(entries, list):
            raise ParseError("instrument master must be a JSON array")
        
        instruments = []
        skipped = 0
        for entry in entries:
            if not isinstance(entry, dict):
                raise ParseError(f"instrument entry is not an object: {entry!r}")
            inst = parse_instrument(entry)
            if inst is None:
                skipped += 1
                continue
            instruments.append(inst)
        
        catalog = cls(instruments)
        logger.info(
            f"Catalog: loaded {len(catalog)} instruments "
            f"({skipped} unsupported rows skipped)"
        )
        return catalog
    
    def __len__(self) -> int:
        return len(self._instruments)
    
    def __contains__(self, key: str) -> bool:
        return key in self._by_key
    
    def __iter__(self) -> Iterator[Instrument]:
        return iter(self._instruments)
    
    def get(self, key: str) -> Optional[Instrument]:
        return self._by_key.get(key)
    
    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.loaded_at).total_seconds()
    
    def _rows(self, underlying: str, segment: Segment) -> List[Instrument]:
        return self._index.get((underlying.upper(), segment), [])
    
    def find_expiries(self, underlying: str, segment: Segment) -> Iterator[datetime]:
        """Yield each distinct expiry for the underlying/segment, in one pass."""
        seen = set()
        for inst in self._rows(underlying, segment):
            if inst.expiry is None or inst.expiry in seen:
                continue
            seen.add(inst.expiry)
            yield inst.expiry
    
    def find_by_strikes_and_expiry(
        self,
        underlying: str,
        segment: Segment,
        expiry: datetime,
        strikes: Iterable[Decimal],
        types: Iterable[InstrumentType] = OPTION_TYPES,
    ) -> List[Instrument]:
        """Instruments at any of the strikes for exactly this expiry, in catalog order."""
        strike_set = set(strikes)
        type_set = set(types)
        return [
            inst
            for inst in self._rows(underlying, segment)
            if inst.type in type_set
            and inst.expiry == expiry
            and inst.strike_price in strike_set
        ]
