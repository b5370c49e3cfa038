"""Stream store interface and in-process implementation."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Sequence

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

from .errors import PublishError
from .schema import ZERO_BYTES32, EventSchema, compute_schema_id
from .types import DataStream, EventStream, StreamEvent

logger = logging.getLogger(__name__)

OnData = Callable[[StreamEvent], None]
OnError = Callable[[Exception], None]


class Subscription:
    """
    Handle for an event subscription.

    unsubscribe() is idempotent.
    """

    def __init__(self, event_id: str, closer: Callable[[], Awaitable[None]]):
        self.event_id = event_id
        self._closer = closer
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        await self._closer()


class StreamStore(ABC):
    """
    Boundary to the external data-stream service.

    Writes carry records and events together and are committed
    atomically by the service; there is no separate write or emit call.
    """

    @abstractmethod
    async def set_and_emit_events(
        self,
        data_streams: Sequence[DataStream],
        event_streams: Sequence[EventStream],
        publisher: str,
    ) -> str:
        """
        Write records and emit events in one atomic operation.

        Returns:
            Transaction id

        Raises:
            PublishError: if the service rejects the operation
        """
        ...

    @abstractmethod
    async def get_all_publisher_data_for_schema(
        self,
        schema_id: str,
        publisher: str,
    ) -> list[Any]:
        """Latest stored records of a publisher for a schema (may be empty)."""
        ...

    @abstractmethod
    async def subscribe(
        self,
        event_id: str,
        on_data: OnData,
        on_error: Optional[OnError] = None,
    ) -> Subscription:
        """Register for notifications of an event id."""
        ...

    @abstractmethod
    async def is_data_schema_registered(self, schema_id: str) -> bool:
        ...

    @abstractmethod
    async def register_data_schema(
        self,
        schema: str,
        parent_schema_id: str = ZERO_BYTES32,
    ) -> str:
        """Register a data schema; returns the transaction id."""
        ...

    @abstractmethod
    async def register_event_schema(self, event_schema: EventSchema) -> str:
        """Register an event schema; returns the transaction id."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        pass


def _schema_types(schema: str) -> list[str]:
    inner = schema.strip()
    if inner.startswith("(") and inner.endswith(")"):
        inner = inner[1:-1]
    return [t.strip() for t in inner.split(",") if t.strip()]


def wrap_decoded(schema: str, data: str) -> Any:
    """
    Shape stored bytes the way the stream service's read API returns them.

    The service decodes registered schemas and nests the field list
    under two ``value`` layers, each field as {name, type, value}.
    Falls back to the raw hex when the bytes do not match the schema.
    """
    types = _schema_types(schema)
    try:
        values = decode(types, bytes.fromhex(data[2:]))
    except (DecodingError, ValueError):
        return data
    fields = [
        {"name": "", "type": t, "value": v}
        for t, v in zip(types, values)
    ]
    return {"value": {"value": fields}}


class InMemoryStreamStore(StreamStore):
    """
    In-process stream store.

    Guarantees:
    - A write/emit pair is applied under one lock; readers never see the
      record without the event having been queued, or vice versa
    - Notifications are delivered on the event loop after the write
      commits, never inline with the writer
    """

    def __init__(self, wrap_reads: bool = False, require_registration: bool = False):
        """
        Initialize the store.

        Args:
            wrap_reads: Return decoded, value-wrapped records like the
                service's read API instead of raw hex
            require_registration: Reject writes for unregistered schemas/events
        """
        self.wrap_reads = wrap_reads
        self.require_registration = require_registration

        self._records: dict[tuple[str, str], dict[str, str]] = {}
        self._data_schemas: dict[str, str] = {}
        self._event_schemas: dict[str, EventSchema] = {}
        self._listeners: dict[str, list[tuple[OnData, Optional[OnError]]]] = {}
        self._tx_count = 0
        self._lock = asyncio.Lock()

    @property
    def tx_count(self) -> int:
        """Number of committed write/emit operations."""
        return self._tx_count

    def _next_tx_id(self, payload: str) -> str:
        self._tx_count += 1
        return "0x" + keccak(text=f"{self._tx_count}:{payload}").hex()

    def _deliver(self, on_data: OnData, on_error: Optional[OnError], event: StreamEvent) -> None:
        try:
            on_data(event)
        except Exception as e:
            logger.warning(f"Error in subscription callback: {e}")
            if on_error:
                on_error(e)

    async def set_and_emit_events(
        self,
        data_streams: Sequence[DataStream],
        event_streams: Sequence[EventStream],
        publisher: str,
    ) -> str:
        if not data_streams and not event_streams:
            raise PublishError("Nothing to write or emit")

        try:
            publisher = to_checksum_address(publisher)
        except ValueError as e:
            raise PublishError(f"Invalid publisher address: {publisher!r}") from e

        for stream in data_streams:
            if not stream.data.startswith("0x"):
                raise PublishError(f"Data for key {stream.key} is not hex encoded")
            if self.require_registration and stream.schema_id.lower() not in self._data_schemas:
                raise PublishError(f"Schema {stream.schema_id} is not registered")
        for event in event_streams:
            if self.require_registration and event.event_id not in self._event_schemas:
                raise PublishError(f"Event {event.event_id} is not registered")

        async with self._lock:
            for stream in data_streams:
                bucket = self._records.setdefault((stream.schema_id.lower(), publisher), {})
                bucket[stream.key] = stream.data
            tx_id = self._next_tx_id(
                "|".join(s.data for s in data_streams) + "|".join(e.event_id for e in event_streams)
            )

            loop = asyncio.get_running_loop()
            for event in event_streams:
                notification = StreamEvent(
                    event_id=event.event_id,
                    topics=tuple(event.topics),
                    payload=event.payload,
                    tx_id=tx_id,
                )
                for on_data, on_error in list(self._listeners.get(event.event_id, [])):
                    loop.call_soon(self._deliver, on_data, on_error, notification)

        logger.debug(f"Committed tx {tx_id}: {len(data_streams)} records, {len(event_streams)} events")
        return tx_id

    async def get_all_publisher_data_for_schema(
        self,
        schema_id: str,
        publisher: str,
    ) -> list[Any]:
        async with self._lock:
            bucket = self._records.get((schema_id.lower(), to_checksum_address(publisher)), {})
            values = list(bucket.values())

        schema = self._data_schemas.get(schema_id.lower())
        if self.wrap_reads and schema:
            return [wrap_decoded(schema, v) for v in values]
        return values

    async def subscribe(
        self,
        event_id: str,
        on_data: OnData,
        on_error: Optional[OnError] = None,
    ) -> Subscription:
        entry = (on_data, on_error)
        self._listeners.setdefault(event_id, []).append(entry)

        async def closer() -> None:
            listeners = self._listeners.get(event_id, [])
            if entry in listeners:
                listeners.remove(entry)

        return Subscription(event_id, closer)

    def listener_count(self, event_id: str) -> int:
        return len(self._listeners.get(event_id, []))

    async def is_data_schema_registered(self, schema_id: str) -> bool:
        return schema_id.lower() in self._data_schemas

    async def register_data_schema(
        self,
        schema: str,
        parent_schema_id: str = ZERO_BYTES32,
    ) -> str:
        schema_id = compute_schema_id(schema)
        async with self._lock:
            self._data_schemas[schema_id] = schema
            return self._next_tx_id(schema)

    async def register_event_schema(self, event_schema: EventSchema) -> str:
        async with self._lock:
            if event_schema.event_id in self._event_schemas:
                raise PublishError(f"Event schema {event_schema.event_id} already registered")
            self._event_schemas[event_schema.event_id] = event_schema
            return self._next_tx_id(event_schema.signature)
