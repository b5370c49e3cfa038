"""Readers and live subscribers for the published price."""

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Optional

import aiohttp
import orjson

from .codec import decode_price_record
from .errors import MalformedRecord, PriceStreamError
from .schema import PRICE_EVENT_ID
from .stream_store import StreamStore, Subscription
from .types import PriceRecord, PriceState, StreamEvent
from .util import utc_now

logger = logging.getLogger(__name__)

StateListener = Callable[[PriceState], None]


class LatestPriceReader:
    """One-shot reads of the latest record for a schema and publisher."""

    def __init__(
        self,
        store: StreamStore,
        schema_id: str,
        publisher_address: str,
        timeout_seconds: float = 15.0,
    ):
        self.store = store
        self.schema_id = schema_id
        self.publisher_address = publisher_address
        self.timeout_seconds = timeout_seconds

    async def read_latest(self) -> Optional[PriceRecord]:
        """
        Read and decode the latest record.

        Returns:
            PriceRecord, or None if nothing has been published yet

        Raises:
            MalformedRecord: if the stored data cannot be decoded
        """
        data = await asyncio.wait_for(
            self.store.get_all_publisher_data_for_schema(
                self.schema_id,
                self.publisher_address,
            ),
            timeout=self.timeout_seconds,
        )
        if not data:
            return None
        return decode_price_record(data[0])


class PriceSubscriber:
    """
    Maintains a live view of the latest price.

    On start the current record is read once, then every PriceUpdated
    notification triggers a fresh read of the store; notification
    payloads are never trusted as the value.

    After stop() no further state changes happen, whatever resolves later.
    """

    def __init__(
        self,
        store: StreamStore,
        reader: LatestPriceReader,
        event_id: str = PRICE_EVENT_ID,
    ):
        """
        Initialize the subscriber.

        Args:
            store: Stream store to subscribe on
            reader: Reader used for the initial and per-notification reads
            event_id: Event to subscribe to
        """
        self.store = store
        self.reader = reader
        self.event_id = event_id

        self._state = PriceState()
        self._active = False
        self._started = False
        self._subscription: Optional[Subscription] = None
        self._listeners: list[StateListener] = []
        self._tasks: set[asyncio.Task] = set()

        # Reads complete out of order; only the newest issued read may apply
        self._read_seq = 0
        self._applied_seq = 0

    @property
    def state(self) -> PriceState:
        """Current exposed state."""
        return self._state

    @property
    def active(self) -> bool:
        return self._active

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback invoked with every new state."""
        self._listeners.append(listener)

    def _set_state(self, state: PriceState) -> None:
        if not self._active:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.warning(f"Error in price listener: {e}")

    def _set_error(self, message: str) -> None:
        self._set_state(replace(self._state, loading=False, error=message))

    def _claim(self, seq: int) -> bool:
        """Whether the read numbered seq may still change the state."""
        if not self._active or seq <= self._applied_seq:
            return False
        self._applied_seq = seq
        return True

    async def refresh(self) -> None:
        """Read the latest record and replace the exposed state."""
        self._read_seq += 1
        seq = self._read_seq

        try:
            record = await self.reader.read_latest()
            state = None if record is None else PriceState.from_record(record, now=utc_now())
        except MalformedRecord as e:
            if self._claim(seq):
                logger.error(f"Malformed price record: {e}")
                self._set_error(f"Malformed price record: {e}")
            return
        except (PriceStreamError, OSError, asyncio.TimeoutError) as e:
            if self._claim(seq):
                logger.error(f"Error fetching price: {e}")
                self._set_error(str(e) or "Failed to fetch price")
            return
        except Exception as e:
            if self._claim(seq):
                logger.error(f"Unexpected error reading price: {e}", exc_info=True)
                self._set_error(str(e) or "Failed to fetch price")
            return

        if not self._claim(seq):
            return

        if state is None:
            logger.info("No price data available yet")
            self._set_state(replace(self._state, loading=False, error=None))
            return

        logger.info(f"Price updated: {state.price}")
        self._set_state(state)

    def _on_notification(self, event: StreamEvent) -> None:
        if not self._active:
            return
        logger.debug(f"Received {event.event_id} notification (tx {event.tx_id})")
        task = asyncio.create_task(self.refresh())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_subscription_error(self, error: Exception) -> None:
        logger.warning(f"Subscription error: {error}")

    async def start(self) -> None:
        """Load the current value, then subscribe to updates."""
        if self._started:
            return
        self._started = True
        self._active = True

        logger.info("Fetching initial price...")
        await self.refresh()
        if not self._active:
            return

        logger.info(f"Subscribing to {self.event_id} updates...")
        try:
            subscription = await self.store.subscribe(
                self.event_id,
                self._on_notification,
                self._on_subscription_error,
            )
        except (PriceStreamError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Error subscribing to updates: {e}")
            self._set_error(f"Failed to subscribe to updates: {e}")
            return
        except Exception as e:
            logger.error(f"Unexpected error subscribing to updates: {e}", exc_info=True)
            self._set_error(f"Failed to subscribe to updates: {e}")
            return

        if not self._active:
            # stop() ran while the subscription was being set up
            await subscription.unsubscribe()
            return

        self._subscription = subscription

    async def stop(self) -> None:
        """Cancel the subscription. Idempotent."""
        self._active = False

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            logger.info("Unsubscribing from price updates")
            await subscription.unsubscribe()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class PriceRefreshClient:
    """
    Requests an out-of-band pipeline run through the control endpoint.

    Independent of any subscription; a successful run reaches
    subscribers through the normal notification path.
    """

    def __init__(
        self,
        url: str = "http://localhost:8080/api/btc-price",
        timeout_seconds: float = 30.0,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None
        self._refreshing = False

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

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

    async def refresh(self) -> dict:
        """
        Trigger one fetch+publish.

        Returns:
            Response body of the control endpoint

        Raises:
            PriceStreamError: if the endpoint reports a failure
        """
        self._refreshing = True
        try:
            session = await self._get_session()
            async with session.post(self.url) as resp:
                body = await resp.read()
                status = resp.status
            try:
                data = orjson.loads(body) if body else {}
            except orjson.JSONDecodeError:
                data = {}
            if status != 200:
                raise PriceStreamError(data.get("error") or f"Failed to refresh price (HTTP {status})")
            logger.info(f"Price refreshed: {data.get('data')}")
            return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PriceStreamError(f"Failed to refresh price: {e}") from e
        finally:
            self._refreshing = False
