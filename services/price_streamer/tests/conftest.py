"""Shared fixtures for price streamer tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from price_streamer.codec import encode_price_record, to_hex
from price_streamer.schema import PRICE_DATA_ID, PRICE_EVENT_ID, PRICE_SCHEMA
from price_streamer.types import DataStream, EventStream, PriceRecord

# Well-known development key (hardhat account #0); never funded on a real network
PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

SCHEMA_ID = PRICE_SCHEMA.schema_id


def make_record(price: int = 10000000, timestamp: int = 1700000000) -> PriceRecord:
    return PriceRecord(price=price, timestamp=timestamp, updater=ADDRESS)


async def write_record(store, record: PriceRecord, schema_id: str = SCHEMA_ID) -> str:
    """Write a record plus PriceUpdated the way the publisher does."""
    return await store.set_and_emit_events(
        [DataStream(PRICE_DATA_ID, schema_id, to_hex(encode_price_record(record)))],
        [EventStream(PRICE_EVENT_ID, (), "0x")],
        publisher=record.updater,
    )


def make_session(status: int = 200, body: bytes = b"{}") -> MagicMock:
    """Mock aiohttp session whose get/post return one canned response."""
    resp = MagicMock()
    resp.status = status
    resp.read = AsyncMock(return_value=body)

    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.closed = False
    session.get = MagicMock(return_value=ctx)
    session.post = MagicMock(return_value=ctx)
    session.close = AsyncMock()
    return session


@pytest.fixture
def record():
    return make_record()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every variable the config reads."""
    for name in (
        "CMC_API_KEY", "CMC_API_URL", "PRICE_SYMBOL", "PRICE_SCHEMA_ID",
        "PUBLISHER_ADDRESS", "WALLET_ADDRESS", "PRIVATE_KEY", "RPC_URL", "WS_URL",
        "STREAM_BACKEND", "FETCH_INTERVAL_SECONDS", "RETRY_DELAY_SECONDS",
        "REQUEST_TIMEOUT_SECONDS", "HTTP_HOST", "HTTP_PORT",
        "STALE_THRESHOLD_SECONDS", "LOG_LEVEL",
    ):
        # setenv first so teardown also removes values loaded from .env files
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch
