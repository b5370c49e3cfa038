"""JSON-RPC/websocket client for a data-stream gateway."""

import asyncio
import logging
from typing import Any, Optional, Sequence

import aiohttp
import orjson
import websockets
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_checksum_address
from websockets.exceptions import ConnectionClosed

from .errors import PriceStreamError, PublishError
from .schema import ZERO_BYTES32, EventSchema
from .stream_store import OnData, OnError, StreamStore, Subscription
from .types import DataStream, EventStream, StreamEvent

logger = logging.getLogger(__name__)


class StreamRpcError(PriceStreamError):
    """Raised when the gateway returns an error or cannot be reached."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class ExponentialBackoff:
    """Exponential backoff for reconnection."""

    def __init__(self, min_seconds: float = 1.0, max_seconds: float = 60.0):
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self._current = min_seconds

    def reset(self) -> None:
        """Reset backoff to minimum."""
        self._current = self.min_seconds

    def next(self) -> float:
        """Get next backoff duration and increase for next time."""
        current = self._current
        self._current = min(self._current * 2, self.max_seconds)
        return current


class _EventListener:
    """
    One websocket subscription to a gateway event.

    Reconnects with backoff and re-subscribes until closed.
    """

    def __init__(
        self,
        ws_url: str,
        event_id: str,
        on_data: OnData,
        on_error: Optional[OnError],
        timeout_seconds: float,
    ):
        self.ws_url = ws_url
        self.event_id = event_id
        self._on_data = on_data
        self._on_error = on_error
        self.timeout_seconds = timeout_seconds

        self._ws = None
        self._subscription_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._backoff = ExponentialBackoff()

    async def connect(self) -> None:
        """Open the websocket and register the subscription."""
        self._ws = await asyncio.wait_for(
            websockets.connect(self.ws_url, ping_interval=20, ping_timeout=60),
            timeout=self.timeout_seconds,
        )
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "streams_subscribe",
            "params": [{"eventId": self.event_id, "onlyPushChanges": False}],
        }
        await self._ws.send(orjson.dumps(request).decode())

        raw = await asyncio.wait_for(self._ws.recv(), timeout=self.timeout_seconds)
        reply = orjson.loads(raw)
        if reply.get("error"):
            error = reply["error"]
            raise StreamRpcError(error.get("message", "subscribe failed"), error.get("code"))

        self._subscription_id = reply.get("result")
        self._backoff.reset()
        logger.info(f"Subscribed to {self.event_id} (subscription {self._subscription_id})")

    def parse_message(self, raw: Any) -> Optional[StreamEvent]:
        """Turn a subscription push into a StreamEvent, or None if unrelated."""
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            logger.warning(f"Failed to parse gateway message: {e}")
            return None

        params = data.get("params") or {}
        if data.get("method") != "streams_subscription":
            return None
        if params.get("subscription") != self._subscription_id:
            return None

        result = params.get("result") or {}
        return StreamEvent(
            event_id=self.event_id,
            topics=tuple(result.get("topics", ())),
            payload=result.get("data"),
            tx_id=result.get("transactionHash"),
        )

    def _report(self, error: Exception) -> None:
        if self._on_error:
            try:
                self._on_error(error)
            except Exception as e:
                logger.warning(f"Error in subscription error callback: {e}")

    async def _read_loop(self) -> None:
        while self._running:
            try:
                async for message in self._ws:
                    event = self.parse_message(message)
                    if event is None:
                        continue
                    try:
                        self._on_data(event)
                    except Exception as e:
                        logger.warning(f"Error in subscription callback: {e}")
                        self._report(e)
            except ConnectionClosed as e:
                logger.warning(f"Gateway subscription closed: {e}")
                self._report(e)
            except asyncio.CancelledError:
                raise

            if not self._running:
                break

            backoff = self._backoff.next()
            logger.info(f"Resubscribing to {self.event_id} in {backoff:.1f}s...")
            await asyncio.sleep(backoff)
            try:
                await self.connect()
            except (OSError, asyncio.TimeoutError, ConnectionClosed, StreamRpcError) as e:
                logger.warning(f"Resubscribe failed: {e}")
                self._report(e)

    async def start(self) -> None:
        await self.connect()
        self._running = True
        self._task = asyncio.create_task(self._read_loop(), name=f"stream_sub_{self.event_id}")

    async def close(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        if self._ws:
            try:
                if self._subscription_id:
                    request = {
                        "jsonrpc": "2.0",
                        "id": 2,
                        "method": "streams_unsubscribe",
                        "params": [self._subscription_id],
                    }
                    await self._ws.send(orjson.dumps(request).decode())
                await self._ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Ignoring error while closing subscription: {e}")
            self._ws = None

        logger.info(f"Unsubscribed from {self.event_id}")


class RpcStreamStore(StreamStore):
    """
    Stream store backed by a JSON-RPC gateway.

    Requests go over HTTP; subscriptions use the gateway websocket.
    Writes are signed with the publisher key (EIP-191 over the keccak of
    the canonical request params).
    """

    def __init__(
        self,
        rpc_url: str,
        ws_url: str = "",
        private_key: str = "",
        timeout_seconds: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the store.

        Args:
            rpc_url: Gateway HTTP JSON-RPC endpoint
            ws_url: Gateway websocket endpoint for subscriptions
            private_key: Publisher key; required only for writes
            timeout_seconds: Per-request timeout
            session: Optional pre-built HTTP session
        """
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self.timeout_seconds = timeout_seconds
        self._account = Account.from_key(private_key) if private_key else None
        self._session = session
        self._request_id = 0
        self._listeners: list[_EventListener] = []

    @property
    def address(self) -> Optional[str]:
        """Address of the signing account, if a key is configured."""
        return self._account.address if self._account else None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        for listener in list(self._listeners):
            await listener.close()
        self._listeners.clear()
        if self._session and not self._session.closed:
            await self._session.close()

    async def call(self, method: str, params: list) -> Any:
        """
        Perform one JSON-RPC call.

        Raises:
            StreamRpcError: on transport errors, non-200 replies or RPC errors
        """
        self._request_id += 1
        body = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        try:
            session = await self._get_session()
            async with session.post(
                self.rpc_url,
                data=orjson.dumps(body),
                headers={"Content-Type": "application/json"},
            ) as resp:
                raw = await resp.read()
                if resp.status != 200:
                    raise StreamRpcError(f"{method} returned HTTP {resp.status}", code=resp.status)
            reply = orjson.loads(raw)
        except StreamRpcError:
            raise
        except asyncio.TimeoutError as e:
            raise StreamRpcError(f"{method} timed out after {self.timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            raise StreamRpcError(f"{method} failed: {e}") from e
        except orjson.JSONDecodeError as e:
            raise StreamRpcError(f"{method} returned invalid JSON: {e}") from e

        error = reply.get("error")
        if error:
            raise StreamRpcError(error.get("message", f"{method} failed"), error.get("code"))
        return reply.get("result")

    def sign_params(self, params: list) -> str:
        """Signature over the canonical JSON of params."""
        if self._account is None:
            raise PublishError("PRIVATE_KEY is required to write to the stream gateway")
        digest = keccak(orjson.dumps(params, option=orjson.OPT_SORT_KEYS))
        signed = self._account.sign_message(encode_defunct(primitive=digest))
        return "0x" + bytes(signed.signature).hex()

    async def set_and_emit_events(
        self,
        data_streams: Sequence[DataStream],
        event_streams: Sequence[EventStream],
        publisher: str,
    ) -> str:
        if self._account is None:
            raise PublishError("PRIVATE_KEY is required to write to the stream gateway")
        if to_checksum_address(publisher) != self._account.address:
            raise PublishError(
                f"Publisher {publisher} does not match signing key {self._account.address}"
            )

        params = [
            [s.to_dict() for s in data_streams],
            [e.to_dict() for e in event_streams],
        ]
        signature = self.sign_params(params)

        try:
            result = await self.call(
                "streams_setAndEmitEvents",
                params + [{"from": self._account.address, "signature": signature}],
            )
        except StreamRpcError as e:
            raise PublishError(f"setAndEmitEvents rejected: {e}") from e

        if not result:
            raise PublishError("setAndEmitEvents returned no transaction id")
        return str(result)

    async def get_all_publisher_data_for_schema(
        self,
        schema_id: str,
        publisher: str,
    ) -> list[Any]:
        result = await self.call(
            "streams_getAllPublisherDataForSchema",
            [schema_id, to_checksum_address(publisher)],
        )
        return list(result or [])

    async def subscribe(
        self,
        event_id: str,
        on_data: OnData,
        on_error: Optional[OnError] = None,
    ) -> Subscription:
        if not self.ws_url:
            raise StreamRpcError("WS_URL is required for subscriptions")

        listener = _EventListener(
            ws_url=self.ws_url,
            event_id=event_id,
            on_data=on_data,
            on_error=on_error,
            timeout_seconds=self.timeout_seconds,
        )
        try:
            await listener.start()
        except (OSError, asyncio.TimeoutError, ConnectionClosed) as e:
            await listener.close()
            raise StreamRpcError(f"Subscription to {event_id} failed: {e}") from e
        self._listeners.append(listener)

        async def closer() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
            await listener.close()

        return Subscription(event_id, closer)

    async def is_data_schema_registered(self, schema_id: str) -> bool:
        return bool(await self.call("streams_isDataSchemaRegistered", [schema_id]))

    async def register_data_schema(
        self,
        schema: str,
        parent_schema_id: str = ZERO_BYTES32,
    ) -> str:
        params = [[{"schema": schema, "parentSchemaId": parent_schema_id}]]
        signature = self.sign_params(params)
        return str(await self.call(
            "streams_registerDataSchemas",
            params + [{"from": self._account.address, "signature": signature}],
        ))

    async def register_event_schema(self, event_schema: EventSchema) -> str:
        params = [[event_schema.event_id], [event_schema.to_dict()]]
        signature = self.sign_params(params)
        return str(await self.call(
            "streams_registerEventSchemas",
            params + [{"from": self._account.address, "signature": signature}],
        ))
