"""Supervisor that keeps one feed session subscribed to the ATM window."""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from .catalog import (
    InstrumentCatalog,
    compute_atm,
    generate_window,
    has_drifted,
    resolve_subscription,
)
from .config import IngestConfig
from .errors import IngestError, ParseError, TransportError
from .streams.session import TRANSPORT_ERRORS, FeedSession
from .types import FeedSessionState, SessionOutcome, SupervisorState

logger = logging.getLogger(__name__)

CatalogSource = Callable[[], Awaitable[bytes]]


class ReconnectSupervisor:
    """
    Drives the feed session lifecycle.

    Startup sequence: ensure catalog -> fetch spot -> ATM + strike window ->
    nearest expiry -> instrument keys -> FeedSession.run(). While the
    session is SUBSCRIBED a drift probe refetches spot every
    drift_probe_interval; an ATM move of at least the drift threshold
    force-closes the session. Every session end, and every failed startup
    step, leads to a full restart after the fixed restart delay.

    Sessions are only started from this coroutine's sequential loop, after
    the previous session's run() has returned, so at most one is ever
    active.
    """

    def __init__(
        self,
        config: IngestConfig,
        api,
        sink,
        catalog_source: CatalogSource,
        session_factory: Callable[..., FeedSession] = FeedSession,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize the supervisor.

        Args:
            config: Ingest configuration
            api: Object with async authorize() and fetch_spot(key)
            sink: TickSink handed to every session
            catalog_source: Async callable returning raw instrument master bytes
            session_factory: FeedSession constructor (replaceable in tests)
            clock: UTC clock used for expiry selection and catalog age
        """
        self.config = config
        self._api = api
        self._sink = sink
        self._catalog_source = catalog_source
        self._session_factory = session_factory
        self._clock = clock

        self._catalog: Optional[InstrumentCatalog] = None
        self._session_seq = 0
        self.state = SupervisorState(started_at=clock())

    @property
    def catalog(self) -> Optional[InstrumentCatalog]:
        return self._catalog

    @property
    def active_session(self) -> Optional[FeedSession]:
        return self.state.active_session

    async def _ensure_catalog(self) -> InstrumentCatalog:
        """Load the instrument master once; reload when it is older than the max age."""
        catalog = self._catalog
        if catalog is not None:
            age = catalog.age_seconds(self._clock())
            if age < self.config.catalog_max_age_seconds:
                return catalog
            logger.info(f"Supervisor: Catalog is {age:.0f}s old, reloading")

        try:
            raw = await self._catalog_source()
        except TRANSPORT_ERRORS as e:
            raise TransportError(f"Instrument master unavailable: {e!r}") from e
        catalog = InstrumentCatalog.load(raw)
        catalog.loaded_at = self._clock()
        self._catalog = catalog
        return catalog

    async def _fetch_spot(self) -> Decimal:
        try:
            return await self._api.fetch_spot(self.config.spot_instrument_key)
        except TRANSPORT_ERRORS as e:
            raise TransportError(f"Spot fetch failed: {e!r}") from e

    async def _build_session(self) -> FeedSession:
        """Run the startup sequence up to, but not including, session.run()."""
        config = self.config
        catalog = await self._ensure_catalog()

        spot = await self._fetch_spot()
        atm = compute_atm(spot, config.strike_gap)
        window = generate_window(atm, config.strike_gap, config.strike_range)

        subscription = resolve_subscription(
            catalog, config.underlying, config.segment_enum, window.strikes, self._clock()
        )
        expiry = subscription.expiry
        count = len(subscription.instrument_keys)

        self.state.current_spot = spot
        self.state.current_atm = atm
        self.state.current_expiry = expiry
        self.state.instrument_count = count
        logger.info(
            f"Supervisor: spot={spot} atm={atm} "
            f"window={window.strikes[0]}..{window.strikes[-1]} "
            f"expiry={expiry.date()} instruments={count}"
        )

        self._session_seq += 1
        return self._session_factory(
            subscription,
            authorizer=self._api.authorize,
            sink=self._sink,
            spot_price=float(spot),
            mode=config.feed_mode,
            method=config.feed_method,
            heartbeat_interval=config.heartbeat_interval_seconds,
            name=f"FeedSession#{self._session_seq}",
        )

    async def _drift_probe(self, session: FeedSession) -> None:
        """Refetch spot periodically; force-close the session when the ATM drifts."""
        config = self.config
        threshold = config.effective_drift_threshold

        while True:
            await asyncio.sleep(config.drift_probe_interval_seconds)
            if session.state is not FeedSessionState.SUBSCRIBED:
                continue

            try:
                spot = await self._fetch_spot()
            except IngestError as e:
                logger.warning(f"Supervisor: Drift probe spot fetch failed: {e}")
                continue

            new_atm = compute_atm(spot, config.strike_gap)
            old_atm = self.state.current_atm
            if old_atm is None or not has_drifted(old_atm, new_atm, threshold):
                continue

            logger.info(
                f"Supervisor: ATM drift {old_atm} -> {new_atm} (spot={spot}), "
                f"restarting session"
            )
            self.state.current_atm = new_atm
            self.state.current_spot = spot
            await session.close(reason="atm drift")
            return

    async def _supervise(self, session: FeedSession, shutdown_event: asyncio.Event) -> SessionOutcome:
        """Run one session alongside its drift probe until it ends."""
        self.state.active_session = session
        run_task = asyncio.create_task(session.run())
        probe_task = asyncio.create_task(self._drift_probe(session))
        stop_task = asyncio.create_task(shutdown_event.wait())

        try:
            done, _ = await asyncio.wait(
                {run_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if run_task not in done:
                await session.close(reason="shutdown")
            return await run_task
        finally:
            for task in (probe_task, stop_task):
                task.cancel()
            for task in (probe_task, stop_task):
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self.state.active_session = None

    async def _wait_restart(self, shutdown_event: asyncio.Event) -> None:
        delay = self.config.restart_delay_seconds
        logger.info(f"Supervisor: Restarting in {delay:.1f}s")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """
        Keep a session running until shutdown.

        Raises:
            ParseError: If the instrument master is malformed. Fatal.
        """
        shutdown_event = shutdown_event or asyncio.Event()

        while not shutdown_event.is_set():
            try:
                session = await self._build_session()
            except ParseError:
                logger.error("Supervisor: Instrument master is malformed, aborting")
                raise
            except IngestError as e:
                self.state.last_error = f"{type(e).__name__}: {e}"
                logger.error(f"Supervisor: Startup failed: {self.state.last_error}")
            else:
                outcome = await self._supervise(session, shutdown_event)
                if outcome.state is FeedSessionState.FAILED:
                    self.state.last_error = f"{outcome.reason}: {outcome.error}"
                logger.info(
                    f"Supervisor: {session.name} ended {outcome.state.name} "
                    f"({outcome.reason}, code={outcome.close_code}, "
                    f"ticks={session.ticks_emitted}, dropped={session.frames_dropped})"
                )

            if shutdown_event.is_set():
                break
            self.state.restart_count += 1
            await self._wait_restart(shutdown_event)

        logger.info("Supervisor: Stopped")

    def status(self) -> dict:
        """Read-only snapshot for the health surface."""
        state = self.state
        session = state.active_session
        now = self._clock()
        return {
            "connection": session.state.name if session is not None else "DISCONNECTED",
            "underlying": self.config.underlying,
            "atm": str(state.current_atm) if state.current_atm is not None else None,
            "spot": str(state.current_spot) if state.current_spot is not None else None,
            "expiry": state.current_expiry.isoformat() if state.current_expiry else None,
            "instrument_count": state.instrument_count,
            "uptime_seconds": int((now - state.started_at).total_seconds()),
            "restart_count": state.restart_count,
            "last_error": state.last_error,
        }
