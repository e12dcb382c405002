"""Entry point for the chainfeed ingestor."""

import asyncio
import logging
import signal
import sys

from .config import IngestConfig
from .errors import ConfigurationError
from .state.heartbeat import StatusWriter
from .supervisor import ReconnectSupervisor
from .upstox_client import UpstoxClient, read_catalog_file
from .writers.sink import ParquetTickSink

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def _main_async(config: IngestConfig) -> None:
    """Wire the pipeline and run until SIGINT/SIGTERM."""
    client = UpstoxClient(
        access_token=config.access_token,
        authorize_url=config.authorize_url,
        ltp_url=config.ltp_url,
        catalog_url=config.catalog_url,
    )
    sink = ParquetTickSink(config.data_dir / "ticks", config.underlying)
    
    if config.catalog_path is not None:
        path = config.catalog_path
        
        async def catalog_source() -> bytes:
            return await asyncio.to_thread(read_catalog_file, path)
    else:
        catalog_source = client.fetch_catalog
    
    supervisor = ReconnectSupervisor(
        config,
        api=client,
        sink=sink,
        catalog_source=catalog_source,
    )
    status = StatusWriter(config.data_dir / "state", supervisor.status)
    
    shutdown_event = asyncio.Event()
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)
    
    logger.info(
        f"Starting chainfeed: {config.underlying} {config.segment} "
        f"gap={config.strike_gap} range={config.strike_range}"
    )
    await status.start(interval_seconds=config.status_interval_seconds)
    flush_task = asyncio.create_task(sink.run(shutdown_event))
    
    try:
        await supervisor.run(shutdown_event)
    finally:
        shutdown_event.set()
        flush_task.cancel()
        try:
            await flush_task
        except asyncio.CancelledError:
            pass
        sink.close()
        await status.stop()
        await client.close()
        logger.info("chainfeed stopped")


def main():
    """Entry point."""
    try:
        config = IngestConfig.from_env()
        setup_logging(config.log_level)
        config.validate()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)
    
    try:
        asyncio.run(_main_async(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
