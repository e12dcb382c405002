"""Tick sink boundary and the parquet-backed sink."""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from time import time_ns
from typing import Optional, Protocol, Sequence

from ..errors import SinkError
from ..types import Tick
from .buffer import TickBuffer
from .checkpoint import write_checkpoint

logger = logging.getLogger(__name__)


class TickSink(Protocol):
    """Durable consumer of tick batches. One batch per decoded frame."""

    def write(self, batch: Sequence[Tick]) -> None:
        """Accept a batch in arrival order. Raises SinkError on rejection."""
        ...


class ParquetTickSink:
    """
    Buffers ticks per UTC hour and writes parquet checkpoints.

    write() only appends to memory; the flush task writes due buffers off
    the event loop. A failed checkpoint write keeps its rows for the next
    attempt, and write() starts rejecting batches once max_buffered_rows
    is reached so a dead disk cannot grow memory without bound.
    """

    def __init__(
        self,
        data_dir: Path,
        underlying: str,
        flush_threshold_rows: int = 5_000,
        flush_threshold_seconds: float = 60.0,
        max_buffered_rows: int = 500_000,
    ):
        self.data_dir = data_dir
        self.underlying = underlying
        self._buffer = TickBuffer(flush_threshold_rows, flush_threshold_seconds)
        self._max_buffered_rows = max_buffered_rows
        self._closed = False

        self.rows_written = 0
        self.checkpoints_written = 0

    def write(self, batch: Sequence[Tick]) -> None:
        if self._closed:
            raise SinkError("sink is closed")
        if self._buffer.get_total_rows() + len(batch) > self._max_buffered_rows:
            raise SinkError(
                f"buffer full ({self._buffer.get_total_rows()} rows pending)"
            )

        recv_ms = time_ns() // 1_000_000
        for tick in batch:
            row = tick.to_row()
            row["ts_recv"] = recv_ms
            observed = tick.observed_at.astimezone(timezone.utc)
            self._buffer.append(observed.strftime("%Y-%m-%d"), observed.hour, row)

    @property
    def pending_rows(self) -> int:
        return self._buffer.get_total_rows()

    def _write(self, key, rows) -> bool:
        date, hour = key
        try:
            path = write_checkpoint(self.data_dir, self.underlying, date, hour, rows)
        except (OSError, ValueError) as e:
            logger.error(f"Sink: Failed to write checkpoint for {date}/{hour:02d}: {e}")
            self._buffer.restore(key, rows)
            return False
        self.rows_written += len(rows)
        self.checkpoints_written += 1
        logger.debug(f"Sink: Wrote checkpoint {path} ({len(rows)} rows)")
        return True

    async def flush_due(self) -> None:
        """Write every buffer that crossed a threshold."""
        for key, rows in self._buffer.take_due():
            await asyncio.to_thread(self._write, key, rows)

    async def run(self, shutdown_event: Optional[asyncio.Event] = None, interval_seconds: float = 1.0) -> None:
        """Periodically flush due buffers until shutdown."""
        while not (shutdown_event and shutdown_event.is_set()):
            try:
                await self.flush_due()
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break

    def close(self) -> int:
        """
        Reject further writes and flush everything synchronously.

        Returns:
            Number of rows left unwritten.
        """
        self._closed = True
        for key, rows in self._buffer.take_all():
            self._write(key, rows)
        left = self._buffer.get_total_rows()
        logger.info(
            f"Sink: Closed ({self.rows_written} rows in {self.checkpoints_written} checkpoints, "
            f"{left} unwritten)"
        )
        return left
