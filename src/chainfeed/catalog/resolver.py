"""Resolve a strike window into subscribable instrument keys."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from ..errors import NotFoundError
from ..types import Segment, Subscription
from .instruments import OPTION_TYPES, InstrumentCatalog

logger = logging.getLogger(__name__)


def nearest_future_expiry(
    catalog: InstrumentCatalog,
    underlying: str,
    segment: Segment,
    now: datetime,
) -> datetime:
    """
    Earliest expiry strictly after now.
    
    Raises:
        NotFoundError: If the catalog has no future expiry (stale master or
            misspelled underlying).
    """
    nearest: Optional[datetime] = None
    for expiry in catalog.find_expiries(underlying, segment):
        if expiry > now and (nearest is None or expiry < nearest):
            nearest = expiry
    
    if nearest is None:
        raise NotFoundError(
            f"No future expiry for {underlying}/{segment.value} after {now.isoformat()}"
        )
    return nearest


def resolve_keys(
    catalog: InstrumentCatalog,
    underlying: str,
    segment: Segment,
    expiry: datetime,
    strikes: Iterable[Decimal],
) -> List[str]:
    """
    CALL and PUT instrument keys at the given strikes for exactly this expiry.
    
    Raises:
        NotFoundError: If nothing matches. This signals a catalog/window
            mismatch that needs operator attention.
    """
    strikes = list(strikes)
    matches = catalog.find_by_strikes_and_expiry(
        underlying, segment, expiry, strikes, OPTION_TYPES
    )
    if not matches:
        raise NotFoundError(
            f"No options for {underlying}/{segment.value} expiry={expiry.date()} "
            f"strikes={strikes[0] if strikes else None}..{strikes[-1] if strikes else None}"
        )
    return [inst.key for inst in matches]


def resolve_subscription(
    catalog: InstrumentCatalog,
    underlying: str,
    segment: Segment,
    strikes: Iterable[Decimal],
    now: datetime,
) -> Subscription:
    """Nearest future expiry plus its keys for the window, as a Subscription."""
    expiry = nearest_future_expiry(catalog, underlying, segment, now)
    keys = resolve_keys(catalog, underlying, segment, expiry, strikes)
    logger.info(
        f"Resolver: {len(keys)} instruments for {underlying} expiry {expiry.date()}"
    )
    return Subscription(expiry=expiry, instrument_keys=tuple(keys))
