"""CoinMarketCap quotes client."""

import asyncio
import logging
from time import time
from typing import Optional

import aiohttp
import orjson

from .errors import UpstreamError, upstream_error_for_status
from .types import FetchResult

logger = logging.getLogger(__name__)

CMC_API_URL = "https://pro-api.coinmarketcap.com/v1/cryptocurrency/quotes/latest"


class PriceSource:
    """
    Client for the CoinMarketCap latest-quotes endpoint.

    One GET per fetch; no retries here (the scheduler owns retry policy).
    """

    def __init__(
        self,
        api_key: str,
        symbol: str = "BTC",
        convert: str = "USD",
        url: str = CMC_API_URL,
        timeout_seconds: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: CoinMarketCap API key (X-CMC_PRO_API_KEY)
            symbol: Asset symbol to quote
            convert: Quote currency
            url: Quotes endpoint
            timeout_seconds: Request timeout
            session: Optional pre-built session (tests, shared pools)
        """
        self.api_key = api_key
        self.symbol = symbol.upper()
        self.convert = convert.upper()
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    def parse_quote(self, payload: dict) -> tuple[float, str]:
        """
        Extract (price, last_updated) from a quotes response.

        Path: data.<SYMBOL>.quote.<CONVERT>.{price,last_updated}
        """
        try:
            quote = payload["data"][self.symbol]
            # Some API versions return a list per symbol
            if isinstance(quote, list):
                quote = quote[0]
            usd = quote["quote"][self.convert]
            price = float(usd["price"])
            last_updated = str(usd.get("last_updated", ""))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise UpstreamError(f"Unexpected quotes payload: {e!r}", status=200) from e

        if price < 0:
            raise UpstreamError(f"Negative price from source: {price}", status=200)
        return price, last_updated

    async def fetch_price(self) -> FetchResult:
        """
        Fetch the latest quote.

        Returns:
            FetchResult stamped with the local fetch time

        Raises:
            RateLimitError: on HTTP 429
            AuthError: on HTTP 401
            UpstreamError: on any other failure
        """
        if not self.api_key:
            raise UpstreamError("CMC_API_KEY is not set", status=401)

        headers = {
            "X-CMC_PRO_API_KEY": self.api_key,
            "Accept": "application/json",
        }
        params = {"symbol": self.symbol, "convert": self.convert}

        logger.info(f"Fetching {self.symbol} price from CoinMarketCap...")

        try:
            session = await self._get_session()
            async with session.get(self.url, headers=headers, params=params) as resp:
                body = await resp.read()
                if resp.status != 200:
                    message = f"Price source returned HTTP {resp.status}"
                    if resp.status == 429:
                        logger.warning("Rate limit exceeded on price source")
                    elif resp.status == 401:
                        logger.warning("Price source rejected the API key")
                    raise upstream_error_for_status(resp.status, message)
                payload = orjson.loads(body)

        except UpstreamError:
            raise
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                f"Price source timed out after {self.timeout_seconds}s"
            ) from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Price source request failed: {e}") from e
        except orjson.JSONDecodeError as e:
            raise UpstreamError(f"Price source returned invalid JSON: {e}", status=200) from e

        price, last_updated = self.parse_quote(payload)

        logger.info(f"{self.symbol} price: ${price:,.2f} (source updated {last_updated})")

        return FetchResult(
            price=price,
            timestamp=int(time()),
            last_updated=last_updated,
            symbol=self.symbol,
        )
