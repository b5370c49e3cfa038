"""Price publisher: fetch a quote and write it to the stream store."""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Optional

from eth_utils import is_address, to_checksum_address

from .codec import (
    encode_price_event_data,
    encode_price_event_topics,
    encode_price_record,
    format_price,
    to_hex,
)
from .errors import ConfigurationError, PublishError, UpstreamError
from .price_source import PriceSource
from .schema import PRICE_DATA_ID, PRICE_EVENT_ID
from .stream_store import StreamStore
from .types import DataStream, EventStream, FetchResult, PriceRecord, PublishedPrice

logger = logging.getLogger(__name__)


def to_cents(price: float) -> int:
    """floor(price * 100), computed on the reported decimal value."""
    return int((Decimal(str(price)) * 100).to_integral_value(rounding=ROUND_FLOOR))


class PricePublisher:
    """
    Builds price records and publishes them.

    Each publish is exactly one store call that both overwrites the
    record at the fixed key and emits PriceUpdated. No retries here.
    """

    def __init__(
        self,
        source: PriceSource,
        store: StreamStore,
        schema_id: str,
        publisher_address: str,
        data_key: str = PRICE_DATA_ID,
        event_id: str = PRICE_EVENT_ID,
        timeout_seconds: float = 15.0,
    ):
        """
        Initialize the publisher.

        Args:
            source: Price source client
            store: Stream store to write to
            schema_id: Registered schema id for the price record
            publisher_address: Identity written into each record
            data_key: Fixed key of the record
            event_id: Event emitted with each write
            timeout_seconds: Upper bound on each external call
        """
        self.source = source
        self.store = store
        self.schema_id = schema_id
        self.publisher_address = publisher_address
        self.data_key = data_key
        self.event_id = event_id
        self.timeout_seconds = timeout_seconds

        self._last_record: Optional[PriceRecord] = None
        self._last_tx_id: Optional[str] = None

    @property
    def last_record(self) -> Optional[PriceRecord]:
        """Most recently published record."""
        return self._last_record

    @property
    def last_tx_id(self) -> Optional[str]:
        return self._last_tx_id

    def ensure_configured(self) -> None:
        """
        Check required identifiers before any run.

        Raises:
            ConfigurationError: if schema id or publisher identity is missing
        """
        if not self.schema_id:
            raise ConfigurationError(
                "PRICE_SCHEMA_ID not set. Run `price-streamer deploy-schema` first"
            )
        if not self.publisher_address or not is_address(self.publisher_address):
            raise ConfigurationError(
                f"Publisher identity missing or invalid: {self.publisher_address!r}"
            )

    def build_record(self, result: FetchResult) -> PriceRecord:
        """
        Build the record for a quote.

        Raises:
            PublishError: if the quote does not fit a price record
        """
        try:
            return PriceRecord(
                price=to_cents(result.price),
                timestamp=result.timestamp,
                updater=to_checksum_address(self.publisher_address),
            )
        except ValueError as e:
            raise PublishError(f"Cannot build price record: {e}") from e

    async def fetch_price(self) -> FetchResult:
        """
        Fetch the current quote.

        Raises:
            UpstreamError: on any source failure, including timeout
        """
        try:
            return await asyncio.wait_for(
                self.source.fetch_price(),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                f"Price fetch exceeded {self.timeout_seconds}s"
            ) from e

    async def publish(self, result: FetchResult) -> str:
        """
        Write the record and emit PriceUpdated in one atomic store call.

        Returns:
            Transaction id

        Raises:
            PublishError: if the store rejects the write/emit or times out
        """
        return await self.publish_record(self.build_record(result))

    async def publish_record(self, record: PriceRecord) -> str:
        """Publish an already built record; returns the transaction id."""
        data_stream = DataStream(
            key=self.data_key,
            schema_id=self.schema_id,
            data=to_hex(encode_price_record(record)),
        )
        event_stream = EventStream(
            event_id=self.event_id,
            topics=tuple(encode_price_event_topics(record.price)),
            payload=encode_price_event_data(record.timestamp),
        )

        published_at = datetime.fromtimestamp(record.timestamp, tz=timezone.utc)
        logger.info(f"Publishing {format_price(record.price)} @ {published_at.isoformat()}")

        try:
            tx_id = await asyncio.wait_for(
                self.store.set_and_emit_events(
                    [data_stream],
                    [event_stream],
                    publisher=record.updater,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise PublishError(f"Publish exceeded {self.timeout_seconds}s") from e

        self._last_record = record
        self._last_tx_id = tx_id

        logger.info(f"Published price update in tx {tx_id}")
        return tx_id

    async def run_once(self) -> PublishedPrice:
        """
        One pipeline run: fetch, then publish.

        Returns:
            The record this run wrote and its transaction id
        """
        record = self.build_record(await self.fetch_price())
        tx_id = await self.publish_record(record)
        return PublishedPrice(record=record, tx_id=tx_id)
