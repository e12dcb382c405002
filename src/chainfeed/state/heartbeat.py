"""Status heartbeat writer for health monitoring."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class StatusWriter:
    """Writes the supervisor status snapshot to a JSON file periodically."""
    
    def __init__(self, state_dir: Path, snapshot: Callable[[], Dict]):
        self.health_file = state_dir / "health" / "chainfeed.json"
        self.health_file.parent.mkdir(parents=True, exist_ok=True)
        self._snapshot = snapshot
        self._running = False
        self._task: Optional[asyncio.Task] = None
    
    def write(self) -> None:
        """Write the status file synchronously."""
        status = {"ts": datetime.now(timezone.utc).isoformat(), **self._snapshot()}
        
        # Atomic write: write to temp, then rename
        temp_file = self.health_file.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(status, f, indent=2, default=str)
        temp_file.replace(self.health_file)
    
    async def start(self, interval_seconds: float = 60.0):
        """Start periodic status writing."""
        self._running = True
        
        async def _loop():
            while self._running:
                try:
                    self.write()
                except OSError as e:
                    logger.error(f"Status: Failed to write {self.health_file}: {e}")
                await asyncio.sleep(interval_seconds)
        
        self._task = asyncio.create_task(_loop())
    
    async def stop(self):
        """Stop status writing and write a final snapshot."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        try:
            self.write()
        except OSError as e:
            logger.error(f"Status: Failed to write final status: {e}")
