"""
Upstox REST client.

Covers the three out-of-band calls the ingestor makes: the feed
authorization exchange, the spot LTP query and the instrument master
download.
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import aiohttp
import orjson

from .errors import AuthError, DataMissingError, TransportError
from .streams.decode import normalize_instrument_key

logger = logging.getLogger(__name__)


# aiohttp reports ClientTimeout expiry as a bare TimeoutError, not a ClientError
REQUEST_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)

class UpstoxClient:
    """
    Async client for the Upstox REST endpoints used by the ingestor.

    All requests carry the bearer access token.
    """

    def __init__(
        self,
        access_token: str,
        authorize_url: str,
        ltp_url: str,
        catalog_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ):
        """
        Initialize the client.

        Args:
            access_token: Upstox OAuth access token
            authorize_url: Market data feed authorization endpoint
            ltp_url: Market quote LTP endpoint
            catalog_url: Instrument master download URL
            timeout_seconds: Total timeout per request
        """
        self._access_token = access_token
        self._authorize_url = authorize_url
        self._ltp_url = ltp_url
        self._catalog_url = catalog_url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure HTTP session is created."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def authorize(self) -> str:
        """
        Exchange the access token for a one-time feed redirect URL.

        Raises:
            AuthError: If the endpoint refuses or returns no redirect URL.
            TransportError: If the request cannot be made.
        """
        session = await self._ensure_session()
        try:
            async with session.get(self._authorize_url, headers=self._headers()) as resp:
                body = await resp.read()
                if resp.status != 200:
                    raise AuthError(
                        f"Authorization failed: {resp.status} - {body[:200]!r}"
                    )
        except REQUEST_ERRORS as e:
            raise TransportError(f"Authorization request failed: {e}") from e

        try:
            payload = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise AuthError(f"Authorization response is not JSON: {e}") from e

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise AuthError("Authorization response has no data object")

        url = data.get("authorizedRedirectUri") or data.get("authorized_redirect_uri")
        if not isinstance(url, str) or not url:
            raise AuthError("Authorization response has no redirect URI")

        logger.info("Upstox: Feed authorization succeeded")
        return url

    async def fetch_spot(self, instrument_key: str) -> Decimal:
        """
        Fetch the last traded price for one instrument (the index spot).

        Raises:
            DataMissingError: If the response carries no usable price.
            TransportError: If the request cannot be made.
        """
        session = await self._ensure_session()
        params = {"instrument_key": instrument_key}
        try:
            async with session.get(self._ltp_url, params=params, headers=self._headers()) as resp:
                body = await resp.read()
                if resp.status != 200:
                    raise DataMissingError(
                        f"LTP request for {instrument_key} failed: {resp.status} - {body[:200]!r}"
                    )
        except REQUEST_ERRORS as e:
            raise TransportError(f"LTP request failed: {e}") from e

        try:
            payload = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise DataMissingError(f"LTP response is not JSON: {e}") from e

        price = extract_last_price(payload, instrument_key)
        if price is None:
            raise DataMissingError(f"No last price for {instrument_key}")
        return price

    async def fetch_catalog(self) -> bytes:
        """
        Download the raw (usually gzip-compressed) instrument master.

        Raises:
            TransportError: If the download fails.
        """
        if not self._catalog_url:
            raise TransportError("No instrument master URL configured")

        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=120)
        try:
            async with session.get(self._catalog_url, timeout=timeout) as resp:
                if resp.status != 200:
                    raise TransportError(f"Instrument master download failed: {resp.status}")
                raw = await resp.read()
        except REQUEST_ERRORS as e:
            raise TransportError(f"Instrument master download failed: {e}") from e

        logger.info(f"Upstox: Downloaded instrument master ({len(raw)} bytes)")
        return raw


def extract_last_price(payload, instrument_key: str) -> Optional[Decimal]:
    """
    Pull last_price for instrument_key out of an LTP response.

    The response map is keyed by 'SEGMENT:symbol' while requests use
    'SEGMENT|symbol', so entries are matched on instrument_token first and
    on the normalized map key second.
    """
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None

    for map_key, quote in data.items():
        if not isinstance(quote, dict):
            continue
        token = quote.get("instrument_token") or normalize_instrument_key(map_key)
        if token != instrument_key:
            continue
        price = quote.get("last_price")
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price <= 0:
            return None
        try:
            return Decimal(str(price))
        except InvalidOperation:
            return None
    return None


def read_catalog_file(path: Path) -> bytes:
    """
    Read a locally cached instrument master.

    Raises:
        TransportError: If the file cannot be read.
    """
    try:
        return path.read_bytes()
    except OSError as e:
        raise TransportError(f"Cannot read instrument master {path}: {e}") from e
