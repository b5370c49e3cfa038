"""Command line entry points for the price streamer."""

import argparse
import asyncio
import logging
import signal
import sys

from .app import PriceStreamerApp, build_store
from .codec import format_price, format_timestamp
from .config import StreamerConfig
from .errors import ConfigurationError, PriceStreamError
from .price_source import PriceSource
from .schema import PRICE_EVENT_SCHEMA, PRICE_SCHEMA, ZERO_BYTES32
from .subscriber import LatestPriceReader, PriceRefreshClient, PriceSubscriber
from .types import PriceState
from .util import setup_logging

logger = logging.getLogger("price_streamer.cli")


async def deploy_schema(config: StreamerConfig) -> int:
    """Register the price data schema and the PriceUpdated event schema."""
    schema_id = PRICE_SCHEMA.schema_id
    print(f"Schema: {PRICE_SCHEMA.canonical}")
    print(f"Schema ID: {schema_id}")

    store = build_store(config)
    try:
        if await store.is_data_schema_registered(schema_id):
            print("Data schema already registered")
        else:
            tx_id = await store.register_data_schema(PRICE_SCHEMA.canonical, ZERO_BYTES32)
            print(f"Data schema registered (tx {tx_id})")

        try:
            tx_id = await store.register_event_schema(PRICE_EVENT_SCHEMA)
            print(f"Event schema {PRICE_EVENT_SCHEMA.signature} registered (tx {tx_id})")
        except PriceStreamError as e:
            # Registering an existing event schema is rejected by the service
            logger.warning(f"Event schema not registered: {e}")
    finally:
        await store.close()

    print()
    print("Add to your environment:")
    print(f"PRICE_SCHEMA_ID={schema_id}")
    if config.publisher_address:
        print(f"PUBLISHER_ADDRESS={config.publisher_address}")
    return 0


async def fetch_once(config: StreamerConfig) -> int:
    """Fetch one quote and print it; nothing is published."""
    source = PriceSource(
        api_key=config.cmc_api_key,
        symbol=config.symbol,
        url=config.cmc_api_url,
        timeout_seconds=config.request_timeout_seconds,
    )
    try:
        result = await source.fetch_price()
    finally:
        await source.close()

    print(f"{result.symbol}: ${result.price:,.2f} (source updated {result.last_updated})")
    return 0


def print_state(state: PriceState) -> None:
    if state.error:
        print(f"Error: {state.error}")
    elif not state.available:
        print("No price data available yet")
    else:
        print(
            f"{format_price(state.price_raw)}  "
            f"at {format_timestamp(state.timestamp)}  "
            f"by {state.updater}"
        )


async def watch(config: StreamerConfig) -> int:
    """Subscribe to PriceUpdated and print every new value until interrupted."""
    store = build_store(config)
    reader = LatestPriceReader(
        store=store,
        schema_id=config.schema_id,
        publisher_address=config.publisher_address,
        timeout_seconds=config.request_timeout_seconds,
    )
    subscriber = PriceSubscriber(store=store, reader=reader)
    subscriber.add_listener(print_state)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await subscriber.start()
        await stop_event.wait()
    finally:
        await subscriber.stop()
        await store.close()
    return 0


async def refresh(url: str) -> int:
    """Ask a running streamer to fetch and publish now."""
    client = PriceRefreshClient(url=url)
    try:
        body = await client.refresh()
    finally:
        await client.close()

    print(body.get("message", "Price updated"))
    data = body.get("data")
    if data:
        print(f"{data['priceFormatted']} at {data['timestampFormatted']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="price-streamer",
        description="Publish the BTC price to a data stream and read it back",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file (default: search from the working directory)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable DEBUG logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the scheduler and HTTP API")
    sub.add_parser("deploy-schema", help="Register the price data and event schemas")
    sub.add_parser("fetch", help="Fetch one quote and print it")
    sub.add_parser("watch", help="Print the price on every PriceUpdated event")

    refresh_parser = sub.add_parser("refresh", help="Trigger a publish on a running streamer")
    refresh_parser.add_argument(
        "--url",
        default="http://localhost:8080/api/btc-price",
        help="Price endpoint of the running streamer",
    )
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = StreamerConfig.from_env_file(args.env_file)
    except ConfigurationError as e:
        setup_logging("price_streamer", level="DEBUG" if args.verbose else "INFO")
        logger.error(f"Config error: {e}")
        return 2
    setup_logging("price_streamer", level="DEBUG" if args.verbose else config.log_level)

    try:
        if args.command == "run":
            app = PriceStreamerApp(config)
            asyncio.run(app.run())
            return 0

        if args.command == "refresh":
            return asyncio.run(refresh(args.url))

        if args.command == "deploy-schema":
            config.validate(require_publisher=False)
            return asyncio.run(deploy_schema(config))

        if args.command == "fetch":
            return asyncio.run(fetch_once(config))

        if args.command == "watch":
            config.validate(require_publisher=False)
            if not config.schema_id or not config.publisher_address:
                raise ConfigurationError(
                    "PRICE_SCHEMA_ID and PUBLISHER_ADDRESS are required to watch"
                )
            return asyncio.run(watch(config))

    except ConfigurationError as e:
        logger.error(f"Config error: {e}")
        return 2
    except PriceStreamError as e:
        logger.error(str(e))
        return 1

    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
