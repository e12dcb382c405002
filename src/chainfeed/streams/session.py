"""Feed session: one authorized, subscribed websocket connection."""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

import orjson
import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.protocol import State

from ..errors import AuthError, DecodeError, IngestError, SinkError, TransportError
from ..types import FeedSessionState, SessionOutcome, Subscription
from .decode import decode_frame

logger = logging.getLogger(__name__)

Authorizer = Callable[[], Awaitable[str]]

# Transport-level failures; everything else is a bug and propagates.
TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


async def default_connect(url: str):
    """Open the feed websocket. Heartbeats are sent by the session itself."""
    return await websockets.connect(
        url,
        ping_interval=None,
        max_size=2**22,
        compression=None,
    )


class FeedSession:
    """
    Owns one streaming connection from authorization to close.

    Lifecycle: IDLE -> AUTHORIZING -> CONNECTED -> SUBSCRIBED -> CLOSING | FAILED.
    A session is single-use: run() drives it once and returns a SessionOutcome.

    While SUBSCRIBED a heartbeat task pings the transport every
    heartbeat_interval seconds. Each binary frame is decoded into ticks that
    are written to the sink as one batch. Bad frames and sink failures are
    logged and do not end the session.
    """

    def __init__(
        self,
        subscription: Subscription,
        authorizer: Authorizer,
        sink,
        spot_price: Optional[float] = None,
        mode: str = "ltp",
        method: str = "subscribe",
        heartbeat_interval: float = 20.0,
        connect: Callable[[str], Awaitable] = default_connect,
        ltp_epsilon: float = 1e-6,
        name: str = "FeedSession",
    ):
        self.subscription = subscription
        self.spot_price = spot_price
        self.mode = mode
        self.method = method
        self.name = name

        self._authorizer = authorizer
        self._sink = sink
        self._connect = connect
        self._heartbeat_interval = heartbeat_interval
        self._ltp_epsilon = ltp_epsilon

        self._state = FeedSessionState.IDLE
        self._ws = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._close_reason: Optional[str] = None

        # Last logged LTP per instrument
        self._ltp: Dict[str, float] = {}

        self.frames_received = 0
        self.frames_dropped = 0
        self.ticks_emitted = 0
        self.heartbeats_sent = 0
        self.outcome: Optional[SessionOutcome] = None

    @property
    def state(self) -> FeedSessionState:
        return self._state

    @property
    def close_requested(self) -> bool:
        return self._close_reason is not None

    def _transition(self, new_state: FeedSessionState) -> None:
        logger.info(f"{self.name}: {self._state.name} -> {new_state.name}")
        self._state = new_state

    def subscribe_message(self) -> bytes:
        """Subscription control message with a fresh correlation id."""
        return orjson.dumps({
            "guid": uuid.uuid4().hex,
            "method": self.method,
            "data": {
                "mode": self.mode,
                "instrumentKeys": list(self.subscription.instrument_keys),
            },
        })

    async def run(self) -> SessionOutcome:
        """
        Authorize, connect, subscribe and consume frames until closed or failed.

        Never raises for authorization or transport problems; they are
        reported through the returned outcome.
        """
        if self._state is not FeedSessionState.IDLE:
            raise RuntimeError(f"{self.name}: session already used ({self._state.name})")

        try:
            return await self._run()
        finally:
            await self._teardown()

    async def _run(self) -> SessionOutcome:
        self._transition(FeedSessionState.AUTHORIZING)
        try:
            url = await self._authorizer()
        except IngestError as e:
            return self._fail(e)
        except TRANSPORT_ERRORS as e:
            return self._fail(TransportError(f"authorization failed: {e!r}"))
        if not url:
            return self._fail(AuthError("authorization returned an empty redirect URL"))

        if self.close_requested:
            return self._finish_closing()

        try:
            self._ws = await self._connect(url)
        except TRANSPORT_ERRORS as e:
            return self._fail(TransportError(f"connect failed: {e}"))

        self._transition(FeedSessionState.CONNECTED)
        if self.close_requested:
            return self._finish_closing()

        try:
            await self._ws.send(self.subscribe_message())
            self._transition(FeedSessionState.SUBSCRIBED)
            logger.info(
                f"{self.name}: Subscribed to {len(self.subscription.instrument_keys)} "
                f"instruments (mode={self.mode}, expiry={self.subscription.expiry.date()})"
            )
            self._heartbeat_task = asyncio.create_task(self._heartbeat())

            async for message in self._ws:
                self._on_frame(message)
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as e:
            if not self.close_requested:
                return self._fail(TransportError(f"connection lost: {e}"))
        except TRANSPORT_ERRORS as e:
            if not self.close_requested:
                return self._fail(TransportError(f"transport error: {e}"))

        return self._finish_closing()

    def _fail(self, error: IngestError) -> SessionOutcome:
        self._cancel_heartbeat()
        self._transition(FeedSessionState.FAILED)
        logger.error(f"{self.name}: {type(error).__name__}: {error}")
        self.outcome = SessionOutcome(
            state=FeedSessionState.FAILED,
            reason=type(error).__name__,
            close_code=self._close_code(),
            error=error,
        )
        return self.outcome

    def _finish_closing(self) -> SessionOutcome:
        self._cancel_heartbeat()
        self._transition(FeedSessionState.CLOSING)
        reason = self._close_reason or "remote close"
        code = self._close_code()
        logger.info(f"{self.name}: Closed ({reason}, code={code})")
        self.outcome = SessionOutcome(
            state=FeedSessionState.CLOSING,
            reason=reason,
            close_code=code,
        )
        return self.outcome

    def _close_code(self) -> Optional[int]:
        if self._ws is None:
            return None
        return getattr(self._ws, "close_code", None)

    def _on_frame(self, message) -> None:
        """Decode one frame and hand its ticks to the sink."""
        self.frames_received += 1
        received_at = datetime.now(timezone.utc)

        try:
            ticks = decode_frame(message, spot_price=self.spot_price, received_at=received_at)
        except DecodeError as e:
            self.frames_dropped += 1
            logger.debug(f"{self.name}: Dropped frame: {e}")
            return

        if not ticks:
            return

        for tick in ticks:
            last = self._ltp.get(tick.instrument_key)
            if last is None or abs(tick.last_traded_price - last) > self._ltp_epsilon:
                self._ltp[tick.instrument_key] = tick.last_traded_price
                logger.debug(f"{self.name}: {tick.instrument_key} ltp={tick.last_traded_price}")

        self.ticks_emitted += len(ticks)
        try:
            self._sink.write(ticks)
        except SinkError as e:
            logger.warning(f"{self.name}: Sink rejected {len(ticks)} ticks: {e}")

    async def _heartbeat(self) -> None:
        """Ping the transport every heartbeat_interval while it reports OPEN."""
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            ws = self._ws
            if ws is None or ws.state is not State.OPEN:
                continue
            try:
                await ws.ping()
                self.heartbeats_sent += 1
            except ConnectionClosed:
                return

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()

    async def close(self, reason: str = "requested") -> None:
        """
        Force the session closed. Idempotent.

        The heartbeat is cancelled before the transport close is awaited.
        """
        if self.close_requested or self._state.terminal:
            return
        self._close_reason = reason
        logger.info(f"{self.name}: Close requested ({reason})")
        self._cancel_heartbeat()
        if self._ws is not None:
            try:
                await self._ws.close()
            except TRANSPORT_ERRORS as e:
                logger.debug(f"{self.name}: Error closing transport: {e}")

    async def _teardown(self) -> None:
        """Cancel the heartbeat and release the transport."""
        task = self._heartbeat_task
        self._cancel_heartbeat()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._ws is not None and self._ws.state is not State.CLOSED:
            try:
                await self._ws.close()
            except TRANSPORT_ERRORS as e:
                logger.debug(f"{self.name}: Error closing transport: {e}")
