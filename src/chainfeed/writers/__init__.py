"""Tick sink boundary and parquet writers."""

from .buffer import TickBuffer, BufferKey
from .checkpoint import TICK_SCHEMA, rows_to_table, write_checkpoint
from .sink import TickSink, ParquetTickSink

__all__ = [
    "TickBuffer",
    "BufferKey",
    "TICK_SCHEMA",
    "rows_to_table",
    "write_checkpoint",
    "TickSink",
    "ParquetTickSink",
]
