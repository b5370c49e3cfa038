"""End-to-end pipeline tests over the in-process stream store."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, Mock, patch

import orjson
import pytest

from price_streamer.app import PriceStreamerApp, build_store
from price_streamer.cli import build_parser, main
from price_streamer.codec import format_price
from price_streamer.config import StreamerConfig
from price_streamer.price_source import PriceSource
from price_streamer.publisher import PricePublisher
from price_streamer.rpc_store import RpcStreamStore
from price_streamer.scheduler import PriceScheduler
from price_streamer.schema import PRICE_EVENT_SCHEMA, PRICE_SCHEMA
from price_streamer.stream_store import InMemoryStreamStore
from price_streamer.subscriber import LatestPriceReader, PriceSubscriber
from price_streamer.types import FetchResult, SchedulerState

from conftest import ADDRESS, SCHEMA_ID, make_session


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def build_pipeline(source):
    store = InMemoryStreamStore(wrap_reads=True, require_registration=True)
    await store.register_data_schema(PRICE_SCHEMA.canonical)
    await store.register_event_schema(PRICE_EVENT_SCHEMA)

    publisher = PricePublisher(source, store, SCHEMA_ID, ADDRESS)
    scheduler = PriceScheduler(publisher, interval_seconds=60.0, retry_delay_seconds=30.0)
    subscriber = PriceSubscriber(store, LatestPriceReader(store, SCHEMA_ID, ADDRESS))
    return store, scheduler, subscriber


class TestPipeline:
    """Publish, notify, re-read and decode."""

    @pytest.mark.asyncio
    async def test_publish_reaches_subscriber(self):
        source = Mock()
        source.fetch_price = AsyncMock(return_value=FetchResult(
            price=100000.0, timestamp=1700000000, last_updated="",
        ))
        store, scheduler, subscriber = await build_pipeline(source)
        await subscriber.start()
        assert not subscriber.state.available

        assert await scheduler.fetch_and_publish() is True
        await settle()

        state = subscriber.state
        assert state.price == Decimal("100000.00")
        assert format_price(state.price_raw) == "$100,000.00"
        assert state.timestamp == 1700000000
        assert state.updater == ADDRESS
        assert state.error is None

        await subscriber.stop()
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_rate_limit_schedules_retry(self):
        source = PriceSource(api_key="key", session=make_session(429, b"{}"))
        store, scheduler, subscriber = await build_pipeline(source)
        await subscriber.start()

        assert await scheduler.fetch_and_publish() is False
        await settle()

        assert scheduler.state is SchedulerState.RETRY_PENDING
        # Retry follows the retry delay, not the 60s cadence
        assert 29.0 < scheduler.retry_due_in() <= 30.0
        assert store.tx_count == 2  # schema registrations only
        assert not subscriber.state.available

        await subscriber.stop()
        await scheduler.stop()


class TestApp:
    """Tests for application wiring."""

    def test_build_store(self):
        assert isinstance(build_store(StreamerConfig(backend="memory")), InMemoryStreamStore)
        store = build_store(StreamerConfig(rpc_url="http://gateway"))
        assert isinstance(store, RpcStreamStore)
        assert store.rpc_url == "http://gateway"

    @pytest.mark.asyncio
    async def test_memory_backend_registers_schemas(self):
        config = StreamerConfig(cmc_api_key="key", publisher_address=ADDRESS, backend="memory")
        app = PriceStreamerApp(config)

        app._setup_components()
        await app._check_schema()

        assert await app.store.is_data_schema_registered(SCHEMA_ID)
        assert app.publisher.schema_id == SCHEMA_ID
        assert app.server.scheduler is app.scheduler
        assert app.scheduler.interval_seconds == 60.0


class TestCli:
    """Tests for the command line."""

    def test_parser(self):
        args = build_parser().parse_args(["refresh", "--url", "http://x/api/btc-price"])
        assert args.command == "refresh"
        assert args.url == "http://x/api/btc-price"

    def test_deploy_schema_memory(self, clean_env, capsys):
        clean_env.setenv("STREAM_BACKEND", "memory")
        clean_env.setenv("PUBLISHER_ADDRESS", ADDRESS)

        assert main(["deploy-schema"]) == 0

        out = capsys.readouterr().out
        assert f"PRICE_SCHEMA_ID={SCHEMA_ID}" in out
        assert f"PUBLISHER_ADDRESS={ADDRESS}" in out

    def test_fetch(self, clean_env, capsys):
        clean_env.setenv("CMC_API_KEY", "key")
        payload = orjson.dumps({
            "data": {"BTC": {"quote": {"USD": {"price": 100000.0, "last_updated": "now"}}}}
        })

        with patch(
            "price_streamer.price_source.aiohttp.ClientSession",
            return_value=make_session(200, payload),
        ):
            assert main(["fetch"]) == 0

        assert "BTC: $100,000.00" in capsys.readouterr().out

    def test_config_error_exit_code(self, clean_env):
        clean_env.setenv("STREAM_BACKEND", "carrier-pigeon")
        assert main(["deploy-schema"]) == 2

    def test_malformed_env_exit_code(self, clean_env):
        clean_env.setenv("HTTP_PORT", "eighty")
        assert main(["deploy-schema"]) == 2
