"""Tests for price_source.py - CoinMarketCap client."""

import asyncio
from unittest.mock import MagicMock

import aiohttp
import orjson
import pytest

from price_streamer.errors import AuthError, RateLimitError, UpstreamError
from price_streamer.price_source import CMC_API_URL, PriceSource

from conftest import make_session


def quote_payload(price=43250.57, last_updated="2024-01-01T00:00:00.000Z"):
    return orjson.dumps({
        "data": {
            "BTC": {
                "symbol": "BTC",
                "quote": {"USD": {"price": price, "last_updated": last_updated}},
            }
        }
    })


class TestParseQuote:
    """Tests for response parsing."""

    def test_parses_price(self):
        source = PriceSource(api_key="k")
        price, last_updated = source.parse_quote(orjson.loads(quote_payload()))
        assert price == 43250.57
        assert last_updated == "2024-01-01T00:00:00.000Z"

    def test_list_per_symbol(self):
        source = PriceSource(api_key="k")
        payload = {"data": {"BTC": [{"quote": {"USD": {"price": 1.0}}}]}}
        assert source.parse_quote(payload) == (1.0, "")

    def test_missing_path(self):
        source = PriceSource(api_key="k")
        with pytest.raises(UpstreamError, match="Unexpected quotes payload"):
            source.parse_quote({"data": {}})

    def test_negative_price(self):
        source = PriceSource(api_key="k")
        with pytest.raises(UpstreamError):
            source.parse_quote({"data": {"BTC": {"quote": {"USD": {"price": -1}}}}})


class TestFetchPrice:
    """Tests for PriceSource.fetch_price."""

    @pytest.mark.asyncio
    async def test_success(self):
        session = make_session(200, quote_payload(price=100000.0))
        source = PriceSource(api_key="secret", session=session)

        result = await source.fetch_price()

        assert result.price == 100000.0
        assert result.symbol == "BTC"
        assert result.timestamp > 0
        args, kwargs = session.get.call_args
        assert args[0] == CMC_API_URL
        assert kwargs["headers"]["X-CMC_PRO_API_KEY"] == "secret"
        assert kwargs["params"] == {"symbol": "BTC", "convert": "USD"}

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        source = PriceSource(api_key="k", session=make_session(429, b"{}"))
        with pytest.raises(RateLimitError) as exc_info:
            await source.fetch_price()
        assert exc_info.value.status == 429

    @pytest.mark.asyncio
    async def test_bad_key(self):
        source = PriceSource(api_key="k", session=make_session(401, b"{}"))
        with pytest.raises(AuthError):
            await source.fetch_price()

    @pytest.mark.asyncio
    async def test_server_error(self):
        source = PriceSource(api_key="k", session=make_session(500, b"oops"))
        with pytest.raises(UpstreamError) as exc_info:
            await source.fetch_price()
        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_missing_key_makes_no_request(self):
        session = make_session()
        source = PriceSource(api_key="", session=session)
        with pytest.raises(UpstreamError, match="CMC_API_KEY"):
            await source.fetch_price()
        session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        source = PriceSource(api_key="k", session=make_session(200, b"not json"))
        with pytest.raises(UpstreamError, match="invalid JSON"):
            await source.fetch_price()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        session = make_session()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        source = PriceSource(api_key="k", session=session)
        with pytest.raises(UpstreamError, match="request failed"):
            await source.fetch_price()

    @pytest.mark.asyncio
    async def test_timeout(self):
        session = make_session()
        session.get = MagicMock(side_effect=asyncio.TimeoutError())
        source = PriceSource(api_key="k", session=session)
        with pytest.raises(UpstreamError, match="timed out"):
            await source.fetch_price()
