"""In-memory tick row buffers per UTC hour."""

from collections import defaultdict
from time import monotonic
from typing import Dict, List, Tuple


# Buffer key: (date, hour)
BufferKey = Tuple[str, int]


class TickBuffer:
    """
    Holds sink rows per (date, hour) until they are flushed to a checkpoint.
    
    A buffer becomes due when it reaches flush_threshold_rows or when
    flush_threshold_seconds have passed since it was last flushed.
    """
    
    def __init__(
        self,
        flush_threshold_rows: int = 5_000,
        flush_threshold_seconds: float = 60.0,
    ):
        self._buffers: Dict[BufferKey, List[dict]] = defaultdict(list)
        self._last_flush_time: Dict[BufferKey, float] = {}
        self._flush_threshold_rows = flush_threshold_rows
        self._flush_threshold_seconds = flush_threshold_seconds
    
    def append(self, date: str, hour: int, row: dict) -> None:
        """Append a row to the (date, hour) buffer."""
        key = (date, hour)
        if key not in self._buffers and key not in self._last_flush_time:
            self._last_flush_time[key] = monotonic()
        self._buffers[key].append(row)
    
    def take_due(self, now: float = None) -> List[Tuple[BufferKey, List[dict]]]:
        """
        Remove and return buffers that crossed a flush threshold.
        
        Returns:
            List of ((date, hour), rows) tuples.
        """
        now = monotonic() if now is None else now
        due = []
        
        for key, rows in list(self._buffers.items()):
            if not rows:
                continue
            elapsed = now - self._last_flush_time.get(key, now)
            if len(rows) >= self._flush_threshold_rows or elapsed >= self._flush_threshold_seconds:
                due.append((key, rows))
                del self._buffers[key]
                self._last_flush_time[key] = now
        
        return due
    
    def take_all(self) -> List[Tuple[BufferKey, List[dict]]]:
        """Remove and return every non-empty buffer (final flush)."""
        taken = [(key, rows) for key, rows in self._buffers.items() if rows]
        self._buffers.clear()
        return taken
    
    def restore(self, key: BufferKey, rows: List[dict]) -> None:
        """Put rows back at the front of a buffer after a failed flush."""
        self._buffers[key] = rows + self._buffers.get(key, [])
    
    def get_total_rows(self) -> int:
        """Total number of rows across all buffers."""
        return sum(len(rows) for rows in self._buffers.values())
