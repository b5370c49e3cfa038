"""Main application for the BTC price streamer."""

import asyncio
import logging
import signal
from typing import Optional

from .config import StreamerConfig
from .errors import PriceStreamError
from .health import HealthTracker
from .price_server import PriceServer
from .price_source import PriceSource
from .publisher import PricePublisher
from .rpc_store import RpcStreamStore
from .scheduler import PriceScheduler
from .schema import PRICE_EVENT_SCHEMA, PRICE_SCHEMA
from .stream_store import InMemoryStreamStore, StreamStore
from .subscriber import LatestPriceReader
from .util import setup_logging

logger = logging.getLogger(__name__)


def build_store(config: StreamerConfig) -> StreamStore:
    """Create the stream store selected by STREAM_BACKEND."""
    if config.backend == "memory":
        return InMemoryStreamStore(wrap_reads=True)
    return RpcStreamStore(
        rpc_url=config.rpc_url,
        ws_url=config.ws_url,
        private_key=config.private_key,
        timeout_seconds=config.request_timeout_seconds,
    )


class PriceStreamerApp:
    """
    Main application that wires everything together.

    Component graph:
    PriceSource --> PricePublisher --> StreamStore
                        ^                  |
    PriceScheduler -----┘                  v
          |                       LatestPriceReader --> PriceServer
          └──────► HealthTracker ◄─────────────────────────┘

    Manual runs from PriceServer (POST) go through PriceScheduler.
    """

    def __init__(self, config: StreamerConfig, store: Optional[StreamStore] = None):
        """
        Initialize the application.

        Args:
            config: Application configuration
            store: Optional pre-built stream store (defaults to the configured backend)
        """
        self.config = config

        # Validate config
        config.validate()

        # Components
        self.store: Optional[StreamStore] = store
        self.source: Optional[PriceSource] = None
        self.publisher: Optional[PricePublisher] = None
        self.health: Optional[HealthTracker] = None
        self.scheduler: Optional[PriceScheduler] = None
        self.reader: Optional[LatestPriceReader] = None
        self.server: Optional[PriceServer] = None

        # Control
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    def _setup_components(self) -> None:
        """Initialize all components."""
        if self.store is None:
            self.store = build_store(self.config)

        self.health = HealthTracker(
            stale_threshold_seconds=self.config.stale_threshold_seconds
        )

        self.source = PriceSource(
            api_key=self.config.cmc_api_key,
            symbol=self.config.symbol,
            url=self.config.cmc_api_url,
            timeout_seconds=self.config.request_timeout_seconds,
        )

        self.publisher = PricePublisher(
            source=self.source,
            store=self.store,
            schema_id=self.config.schema_id,
            publisher_address=self.config.publisher_address,
            timeout_seconds=self.config.request_timeout_seconds,
        )

        self.scheduler = PriceScheduler(
            publisher=self.publisher,
            interval_seconds=self.config.fetch_interval_seconds,
            retry_delay_seconds=self.config.retry_delay_seconds,
            health=self.health,
        )

        self.reader = LatestPriceReader(
            store=self.store,
            schema_id=self.config.schema_id,
            publisher_address=self.config.publisher_address,
            timeout_seconds=self.config.request_timeout_seconds,
        )

        self.server = PriceServer(
            reader=self.reader,
            scheduler=self.scheduler,
            health=self.health,
            host=self.config.http_host,
            port=self.config.http_port,
        )

    async def _check_schema(self) -> None:
        """Register schemas on the in-process store; verify them on a gateway."""
        if isinstance(self.store, InMemoryStreamStore):
            await self.store.register_data_schema(PRICE_SCHEMA.canonical)
            await self.store.register_event_schema(PRICE_EVENT_SCHEMA)
            return

        try:
            registered = await self.store.is_data_schema_registered(self.config.schema_id)
        except (PriceStreamError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not check schema registration: {e}")
            return

        if not registered:
            logger.warning(
                f"Schema {self.config.schema_id} is not registered; "
                "run `price-streamer deploy-schema` before publishing"
            )

    async def start(self) -> None:
        """Start the application."""
        logger.info("Starting BTC price streamer...")

        self._setup_components()
        await self._check_schema()

        # Start HTTP server
        await self.server.start()

        # Start background tasks
        self._tasks = [
            asyncio.create_task(
                self.scheduler.run(self._shutdown_event),
                name="price_scheduler",
            ),
        ]

        logger.info("BTC price streamer started")

    async def stop(self) -> None:
        """Stop the application."""
        logger.info("Stopping BTC price streamer...")

        # Signal shutdown
        self._shutdown_event.set()

        # The in-flight run is allowed to finish
        if self.scheduler:
            await self.scheduler.stop()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        # Stop server
        if self.server:
            await self.server.stop()

        if self.source:
            await self.source.close()
        if self.store:
            await self.store.close()

        logger.info("BTC price streamer stopped")

    async def run(self) -> None:
        """
        Run the application until shutdown signal.

        Handles SIGINT and SIGTERM for graceful shutdown.
        """
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(self._handle_signal())
            )

        try:
            await self.start()

            # Wait for shutdown
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def _handle_signal(self) -> None:
        """Handle shutdown signal."""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()


def main() -> None:
    """Entry point for the application."""
    config = StreamerConfig.from_env_file()

    setup_logging("price_streamer", level=config.log_level)

    logger.info(
        f"Starting with config: symbol={config.symbol}, backend={config.backend}, "
        f"port={config.http_port}"
    )

    app = PriceStreamerApp(config)
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
