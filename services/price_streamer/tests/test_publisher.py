"""Tests for publisher.py - fetch, build and atomic publish."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from price_streamer.codec import decode_price_record
from price_streamer.errors import ConfigurationError, PublishError, RateLimitError, UpstreamError
from price_streamer.publisher import PricePublisher, to_cents
from price_streamer.schema import PRICE_DATA_ID, PRICE_EVENT_ID
from price_streamer.stream_store import InMemoryStreamStore
from price_streamer.types import FetchResult

from conftest import ADDRESS, SCHEMA_ID


def make_source(price=100000.0, timestamp=1700000000):
    source = Mock()
    source.fetch_price = AsyncMock(return_value=FetchResult(
        price=price, timestamp=timestamp, last_updated="2023-11-14T22:13:00Z",
    ))
    return source


def make_publisher(source=None, store=None, **kwargs):
    return PricePublisher(
        source=source or make_source(),
        store=store or InMemoryStreamStore(),
        schema_id=SCHEMA_ID,
        publisher_address=ADDRESS,
        **kwargs,
    )


class TestToCents:

    @pytest.mark.parametrize("price,cents", [
        (100000.0, 10000000),
        (43250.57, 4325057),
        (0.3, 30),
        (0.1 + 0.2, 30),
        (100000.999, 10000099),
        (0.0, 0),
    ])
    def test_floor(self, price, cents):
        assert to_cents(price) == cents


class TestPricePublisher:
    """Tests for PricePublisher."""

    def test_build_record(self):
        publisher = make_publisher()
        rec = publisher.build_record(FetchResult(price=43250.57, timestamp=5, last_updated=""))
        assert rec.price == 4325057
        assert rec.timestamp == 5
        assert rec.updater == ADDRESS

    def test_ensure_configured(self):
        make_publisher().ensure_configured()

    def test_missing_schema_id(self):
        publisher = make_publisher()
        publisher.schema_id = ""
        with pytest.raises(ConfigurationError, match="PRICE_SCHEMA_ID"):
            publisher.ensure_configured()

    def test_missing_publisher(self):
        publisher = make_publisher()
        publisher.publisher_address = ""
        with pytest.raises(ConfigurationError):
            publisher.ensure_configured()

    @pytest.mark.asyncio
    async def test_single_store_call(self):
        """Record write and event emit go out in one call."""
        store = Mock()
        store.set_and_emit_events = AsyncMock(return_value="0xtx")
        publisher = make_publisher(store=store)

        published = await publisher.run_once()
        rec = published.record

        store.set_and_emit_events.assert_awaited_once()
        data_streams, event_streams = store.set_and_emit_events.call_args.args
        assert store.set_and_emit_events.call_args.kwargs["publisher"] == ADDRESS
        assert len(data_streams) == 1
        assert data_streams[0].key == PRICE_DATA_ID
        assert data_streams[0].schema_id == SCHEMA_ID
        assert decode_price_record(data_streams[0].data) == rec
        assert len(event_streams) == 1
        assert event_streams[0].event_id == PRICE_EVENT_ID
        assert int(event_streams[0].topics[0], 16) == 10000000
        assert published.tx_id == "0xtx"
        assert publisher.last_tx_id == "0xtx"
        assert publisher.last_record == rec

    @pytest.mark.asyncio
    async def test_record_readable_after_publish(self):
        store = InMemoryStreamStore()
        publisher = make_publisher(store=store)

        rec = (await publisher.run_once()).record

        data = await store.get_all_publisher_data_for_schema(SCHEMA_ID, ADDRESS)
        assert decode_price_record(data[0]) == rec
        assert rec.price == 10000000
        assert rec.timestamp == 1700000000

    @pytest.mark.asyncio
    async def test_publish_returns_tx_id(self):
        store = Mock()
        store.set_and_emit_events = AsyncMock(return_value="0xtx")
        publisher = make_publisher(store=store)

        tx_id = await publisher.publish(
            FetchResult(price=43250.57, timestamp=5, last_updated="")
        )

        assert tx_id == "0xtx"
        assert publisher.last_record.price == 4325057

    @pytest.mark.asyncio
    async def test_each_run_returns_its_own_record(self):
        gate = asyncio.Event()
        calls = []

        async def set_and_emit_events(data_streams, event_streams, publisher):
            calls.append(data_streams)
            if len(calls) == 1:
                await gate.wait()
            return f"0xtx{len(calls)}"

        source = Mock()
        source.fetch_price = AsyncMock(side_effect=[
            FetchResult(price=1.0, timestamp=1, last_updated=""),
            FetchResult(price=2.0, timestamp=2, last_updated=""),
        ])
        store = Mock()
        store.set_and_emit_events = set_and_emit_events
        publisher = make_publisher(source=source, store=store)

        slow = asyncio.create_task(publisher.run_once())
        while not calls:
            await asyncio.sleep(0)
        fast = await publisher.run_once()
        gate.set()
        slow_result = await slow

        assert fast.record.price == 200
        assert fast.tx_id == "0xtx2"
        assert slow_result.record.price == 100
        assert slow_result.tx_id == "0xtx1"

    @pytest.mark.asyncio
    async def test_fetch_failure_publishes_nothing(self):
        source = Mock()
        source.fetch_price = AsyncMock(side_effect=RateLimitError())
        store = InMemoryStreamStore()
        publisher = make_publisher(source=source, store=store)

        with pytest.raises(RateLimitError):
            await publisher.run_once()
        assert store.tx_count == 0
        assert publisher.last_record is None

    @pytest.mark.asyncio
    async def test_store_rejection_propagates(self):
        store = Mock()
        store.set_and_emit_events = AsyncMock(side_effect=PublishError("reverted"))
        publisher = make_publisher(store=store)

        with pytest.raises(PublishError):
            await publisher.run_once()
        assert publisher.last_tx_id is None

    @pytest.mark.asyncio
    async def test_fetch_timeout(self):
        async def hang():
            await asyncio.sleep(10)

        source = Mock()
        source.fetch_price = hang
        publisher = make_publisher(source=source, timeout_seconds=0.01)

        with pytest.raises(UpstreamError, match="exceeded"):
            await publisher.run_once()

    @pytest.mark.asyncio
    async def test_publish_timeout(self):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        store = Mock()
        store.set_and_emit_events = hang
        publisher = make_publisher(store=store, timeout_seconds=0.01)

        with pytest.raises(PublishError, match="exceeded"):
            await publisher.run_once()

    @pytest.mark.asyncio
    async def test_unencodable_price(self):
        publisher = make_publisher(source=make_source(price=-5.0))
        with pytest.raises(PublishError, match="Cannot build"):
            await publisher.run_once()
