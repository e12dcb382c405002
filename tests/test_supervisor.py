"""Tests for the reconnect supervisor."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from chainfeed.config import IngestConfig
from chainfeed.errors import ParseError, TransportError
from chainfeed.supervisor import ReconnectSupervisor
from chainfeed.types import FeedSessionState, SessionOutcome

from conftest import EXPIRY_FAR, EXPIRY_NEAR, NOW, RecordingSink, wait_until

RESTART_DELAY = 0.2


class FakeApi:
    """Authorizer and spot source with a settable spot price."""

    def __init__(self, spot: str = "25010"):
        self.spot = Decimal(spot)
        self.spot_error = None
        self.spot_calls = 0

    async def authorize(self) -> str:
        return "wss://feed.example/redirect"

    async def fetch_spot(self, instrument_key: str) -> Decimal:
        self.spot_calls += 1
        if self.spot_error is not None:
            raise self.spot_error
        return self.spot


class FakeSession:
    """Session that stays SUBSCRIBED until the test ends it."""

    def __init__(self, factory, subscription, **kwargs):
        self._factory = factory
        self.subscription = subscription
        self.kwargs = kwargs
        self.name = kwargs["name"]
        self.state = FeedSessionState.IDLE
        self.close_reasons = []
        self.ticks_emitted = 0
        self.frames_dropped = 0
        self.created_at = asyncio.get_running_loop().time()
        self._outcome = None
        self._done = asyncio.Event()

    async def run(self) -> SessionOutcome:
        self._factory.active += 1
        self._factory.max_active = max(self._factory.max_active, self._factory.active)
        try:
            self.state = FeedSessionState.SUBSCRIBED
            await self._done.wait()
            return self._outcome
        finally:
            self._factory.active -= 1

    def _end(self, outcome: SessionOutcome) -> None:
        if self._outcome is None:
            self.state = outcome.state
            self._outcome = outcome
            self._done.set()

    def fail(self) -> None:
        self._end(SessionOutcome(
            state=FeedSessionState.FAILED,
            reason="TransportError",
            close_code=1006,
            error=TransportError("connection lost"),
        ))

    async def close(self, reason: str = "requested") -> None:
        self.close_reasons.append(reason)
        self._end(SessionOutcome(state=FeedSessionState.CLOSING, reason=reason, close_code=1000))


class SessionFactory:
    """Records every session the supervisor builds."""

    def __init__(self):
        self.sessions = []
        self.active = 0
        self.max_active = 0

    def __call__(self, subscription, **kwargs):
        session = FakeSession(self, subscription, **kwargs)
        self.sessions.append(session)
        return session


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def make_config(**overrides) -> IngestConfig:
    values = dict(
        access_token="token",
        strike_range=1,
        restart_delay_seconds=RESTART_DELAY,
        drift_probe_interval_seconds=0.02,
    )
    values.update(overrides)
    return IngestConfig(**values)


class Harness:
    def __init__(self, master_bytes, clock=None, **config):
        self.api = FakeApi()
        self.factory = SessionFactory()
        self.clock = clock or Clock()
        self.catalog_loads = 0
        self.catalog_error = None
        self._master = master_bytes
        self.shutdown = asyncio.Event()
        self.supervisor = ReconnectSupervisor(
            make_config(**config),
            self.api,
            RecordingSink(),
            self._load_catalog,
            session_factory=self.factory,
            clock=self.clock,
        )
        self.task = None

    async def _load_catalog(self) -> bytes:
        self.catalog_loads += 1
        if self.catalog_error is not None:
            raise self.catalog_error
        return self._master

    @property
    def sessions(self):
        return self.factory.sessions

    async def start(self, sessions: int = 1):
        self.task = asyncio.create_task(self.supervisor.run(self.shutdown))
        await self.wait_sessions(sessions)

    async def wait_sessions(self, count: int, timeout: float = 2.0):
        await wait_until(
            lambda: len(self.sessions) >= count
            and self.sessions[count - 1].state is FeedSessionState.SUBSCRIBED,
            timeout,
        )

    async def stop(self):
        self.shutdown.set()
        await asyncio.wait_for(self.task, 2.0)


class TestStartup:
    """Tests for the startup sequence."""

    @pytest.mark.asyncio
    async def test_subscribes_to_window_around_atm(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()

        session = h.sessions[0]
        assert session.subscription.expiry == EXPIRY_NEAR
        assert sorted(session.subscription.instrument_keys) == sorted(
            f"NSE_FO|NIFTY260127{strike}{t}"
            for strike in (24950, 25000, 25050)
            for t in ("CE", "PE")
        )
        assert session.kwargs["spot_price"] == 25010.0
        assert session.kwargs["mode"] == "ltp"
        assert session.kwargs["method"] == "subscribe"

        state = h.supervisor.state
        assert state.current_atm == Decimal("25000")
        assert state.current_spot == Decimal("25010")
        assert state.instrument_count == 6

        await h.stop()

    @pytest.mark.asyncio
    async def test_status_snapshot(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()

        status = h.supervisor.status()
        assert status["connection"] == "SUBSCRIBED"
        assert status["underlying"] == "NIFTY"
        assert status["atm"] == "25000"
        assert status["instrument_count"] == 6
        assert status["restart_count"] == 0
        assert status["last_error"] is None

        await h.stop()
        assert h.supervisor.status()["connection"] == "DISCONNECTED"

    @pytest.mark.asyncio
    async def test_no_future_expiry_keeps_retrying(self, master_bytes):
        h = Harness(master_bytes, clock=Clock(EXPIRY_FAR + timedelta(days=1)), restart_delay_seconds=0.01)
        h.task = asyncio.create_task(h.supervisor.run(h.shutdown))

        await wait_until(lambda: h.supervisor.state.restart_count >= 2)
        assert h.sessions == []
        assert h.supervisor.state.last_error.startswith("NotFoundError")

        await h.stop()

    @pytest.mark.asyncio
    async def test_spot_failure_at_startup_is_retried(self, master_bytes):
        h = Harness(master_bytes, restart_delay_seconds=0.01)
        h.api.spot_error = TransportError("timeout")
        h.task = asyncio.create_task(h.supervisor.run(h.shutdown))

        await wait_until(lambda: h.supervisor.state.restart_count >= 1)
        assert h.sessions == []

        h.api.spot_error = None
        await h.wait_sessions(1)
        await h.stop()

    @pytest.mark.asyncio
    async def test_spot_timeout_at_startup_is_retried(self, master_bytes):
        h = Harness(master_bytes, restart_delay_seconds=0.01)
        h.api.spot_error = asyncio.TimeoutError()
        h.task = asyncio.create_task(h.supervisor.run(h.shutdown))

        await wait_until(lambda: h.supervisor.state.restart_count >= 2)
        assert not h.task.done()
        assert h.supervisor.state.last_error.startswith("TransportError")

        h.api.spot_error = None
        await h.wait_sessions(1)
        await h.stop()

    @pytest.mark.asyncio
    async def test_unreadable_master_file_is_retried(self, master_bytes):
        h = Harness(master_bytes, restart_delay_seconds=0.01)
        h.catalog_error = FileNotFoundError("instruments.json.gz")
        h.task = asyncio.create_task(h.supervisor.run(h.shutdown))

        await wait_until(lambda: h.catalog_loads >= 2)
        assert not h.task.done()
        assert h.sessions == []
        assert h.supervisor.state.last_error.startswith("TransportError")

        h.catalog_error = None
        await h.wait_sessions(1)
        await h.stop()

    @pytest.mark.asyncio
    async def test_malformed_master_is_fatal(self):
        h = Harness(b"{not json")
        with pytest.raises(ParseError):
            await asyncio.wait_for(h.supervisor.run(h.shutdown), 2.0)


class TestRestart:
    """Tests for restart after a session ends."""

    @pytest.mark.asyncio
    async def test_transport_failure_restarts_once_after_delay(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()

        loop = asyncio.get_running_loop()
        failed_at = loop.time()
        h.sessions[0].fail()
        await h.wait_sessions(2)

        assert h.sessions[1].created_at - failed_at >= RESTART_DELAY - 0.02
        assert h.supervisor.state.restart_count == 1
        assert h.supervisor.state.last_error.startswith("TransportError")
        assert h.factory.max_active == 1

        await asyncio.sleep(RESTART_DELAY * 1.5)
        assert len(h.sessions) == 2

        await h.stop()

    @pytest.mark.asyncio
    async def test_racing_failure_and_close_restart_once(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()

        session = h.sessions[0]
        session.fail()
        await session.close(reason="atm drift")
        await h.wait_sessions(2)
        await asyncio.sleep(RESTART_DELAY * 1.5)

        assert len(h.sessions) == 2
        assert h.supervisor.state.restart_count == 1
        assert h.factory.max_active == 1

        await h.stop()

    @pytest.mark.asyncio
    async def test_catalog_is_loaded_once(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()

        h.sessions[0].fail()
        await h.wait_sessions(2)
        assert h.catalog_loads == 1

        await h.stop()

    @pytest.mark.asyncio
    async def test_stale_catalog_is_reloaded(self, master_bytes):
        h = Harness(master_bytes, catalog_max_age_seconds=3600)
        await h.start()

        h.clock.now = NOW + timedelta(hours=2)
        h.sessions[0].fail()
        await h.wait_sessions(2)
        assert h.catalog_loads == 2

        await h.stop()

    @pytest.mark.asyncio
    async def test_shutdown_during_restart_wait(self, master_bytes):
        h = Harness(master_bytes, restart_delay_seconds=30)
        await h.start()

        h.sessions[0].fail()
        await wait_until(lambda: h.supervisor.state.restart_count == 1)
        await h.stop()
        assert len(h.sessions) == 1


class TestDriftProbe:
    """Tests for ATM drift detection."""

    @pytest.mark.asyncio
    async def test_drift_closes_and_resubscribes(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()

        h.api.spot = Decimal("25080")
        await h.wait_sessions(2)

        assert h.sessions[0].close_reasons == ["atm drift"]
        assert h.supervisor.state.current_atm == Decimal("25100")
        assert sorted(h.sessions[1].subscription.instrument_keys) == sorted(
            f"NSE_FO|NIFTY260127{strike}{t}"
            for strike in (25050, 25100, 25150)
            for t in ("CE", "PE")
        )
        assert h.factory.max_active == 1

        await h.stop()

    @pytest.mark.asyncio
    async def test_move_below_threshold_keeps_session(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()

        h.api.spot = Decimal("25020")
        calls = h.api.spot_calls
        await wait_until(lambda: h.api.spot_calls >= calls + 3)

        assert h.sessions[0].close_reasons == []
        assert len(h.sessions) == 1

        await h.stop()

    @pytest.mark.asyncio
    async def test_custom_threshold(self, master_bytes):
        h = Harness(master_bytes, drift_threshold=Decimal("150"))
        await h.start()

        h.api.spot = Decimal("25080")
        calls = h.api.spot_calls
        await wait_until(lambda: h.api.spot_calls >= calls + 3)
        assert h.sessions[0].close_reasons == []

        await h.stop()

    @pytest.mark.asyncio
    async def test_probe_spot_failure_keeps_session(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()

        h.api.spot_error = TransportError("timeout")
        calls = h.api.spot_calls
        await wait_until(lambda: h.api.spot_calls >= calls + 3)

        assert h.sessions[0].close_reasons == []
        assert h.sessions[0].state is FeedSessionState.SUBSCRIBED

        await h.stop()

    @pytest.mark.asyncio
    async def test_shutdown_closes_session(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()
        await h.stop()

        assert h.sessions[0].close_reasons == ["shutdown"]
        assert h.supervisor.active_session is None

    @pytest.mark.asyncio
    async def test_probe_spot_timeout_keeps_probing(self, master_bytes):
        h = Harness(master_bytes)
        await h.start()

        h.api.spot_error = asyncio.TimeoutError()
        calls = h.api.spot_calls
        await wait_until(lambda: h.api.spot_calls >= calls + 3)
        assert h.sessions[0].close_reasons == []

        h.api.spot_error = None
        h.api.spot = Decimal("25080")
        await h.wait_sessions(2)
        assert h.sessions[0].close_reasons == ["atm drift"]

        await h.stop()
