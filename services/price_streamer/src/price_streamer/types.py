"""Type definitions for the price streamer."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, localcontext
from enum import Enum, auto
from typing import Optional

from eth_utils import is_address, to_checksum_address

UINT256_MAX = 2**256 - 1
UINT64_MAX = 2**64 - 1

# Enough digits for any uint256 amount of cents
CENTS_PRECISION = len(str(UINT256_MAX)) + 2


def cents_to_decimal(cents: int) -> Decimal:
    """Minor units to dollars, two decimal places, exact for any uint256."""
    with localcontext() as ctx:
        ctx.prec = CENTS_PRECISION
        return Decimal(cents).scaleb(-2)


@dataclass(frozen=True, slots=True)
class PriceRecord:
    """
    One published price.

    Contract invariants:
    - Immutable once built; a new fetch produces a new record.
    - price is in cents and fits uint256; timestamp fits uint64.
    - updater is always stored as an EIP-55 checksum address.
    """
    price: int  # Minor units (cents)
    timestamp: int  # Seconds since epoch
    updater: str  # 20-byte address of the publisher

    def __post_init__(self):
        if isinstance(self.price, bool) or not isinstance(self.price, int):
            raise ValueError(f"price must be an int, got {type(self.price).__name__}")
        if not 0 <= self.price <= UINT256_MAX:
            raise ValueError(f"price out of uint256 range: {self.price}")
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, int):
            raise ValueError(f"timestamp must be an int, got {type(self.timestamp).__name__}")
        if not 0 <= self.timestamp <= UINT64_MAX:
            raise ValueError(f"timestamp out of uint64 range: {self.timestamp}")
        if not isinstance(self.updater, str) or not is_address(self.updater):
            raise ValueError(f"updater is not a valid address: {self.updater!r}")
        object.__setattr__(self, "updater", to_checksum_address(self.updater))

    @property
    def price_decimal(self) -> Decimal:
        """Price in dollars."""
        return cents_to_decimal(self.price)

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON transport."""
        return {
            "price": self.price,
            "timestamp": self.timestamp,
            "updater": self.updater,
        }


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Raw quote held only for the duration of one pipeline run."""
    price: float  # Dollars, as reported by the source
    timestamp: int  # Local fetch time, seconds since epoch
    last_updated: str  # Source-reported last update (ISO string)
    symbol: str = "BTC"


@dataclass(frozen=True, slots=True)
class PublishedPrice:
    """Outcome of one publish: the record written and its transaction."""
    record: PriceRecord
    tx_id: str


@dataclass(frozen=True, slots=True)
class DataStream:
    """A keyed, schema-encoded record write."""
    key: str  # bytes32 hex
    schema_id: str  # bytes32 hex
    data: str  # 0x-prefixed ABI bytes

    def to_dict(self) -> dict:
        return {"id": self.key, "schemaId": self.schema_id, "data": self.data}


@dataclass(frozen=True, slots=True)
class EventStream:
    """An event emitted in the same transaction as a data write."""
    event_id: str
    topics: tuple[str, ...]  # Indexed arguments, each ABI encoded
    payload: str  # Non-indexed arguments, ABI encoded

    def to_dict(self) -> dict:
        return {
            "id": self.event_id,
            "argumentTopics": list(self.topics),
            "data": self.payload,
        }


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """
    Notification delivered to a subscriber.

    Carries no guarantee that topics/payload are sufficient to rebuild
    the record; consumers re-read the store.
    """
    event_id: str
    topics: tuple[str, ...] = ()
    payload: Optional[str] = None
    tx_id: Optional[str] = None


class SchedulerState(Enum):
    """Pipeline scheduler states."""
    IDLE = auto()
    RUNNING = auto()
    RETRY_PENDING = auto()
    STOPPED = auto()


@dataclass(slots=True)
class SchedulerStats:
    """Counters kept by the scheduler."""
    runs: int = 0
    successes: int = 0
    failures: int = 0
    skipped_ticks: int = 0
    retries_scheduled: int = 0
    retries_fired: int = 0
    last_error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class PriceState:
    """
    Latest view of the published price, as exposed to consumers.

    A fresh instance is built on every change so readers never see
    partially updated fields.
    """
    price: Optional[Decimal] = None  # Dollars
    price_raw: Optional[int] = None  # Cents
    timestamp: Optional[int] = None
    updater: Optional[str] = None
    loading: bool = True
    error: Optional[str] = None
    last_update: Optional[datetime] = None  # Local wall clock of last change

    @property
    def available(self) -> bool:
        """Whether a record has been observed."""
        return self.price_raw is not None

    @classmethod
    def from_record(cls, record: PriceRecord, now: datetime) -> "PriceState":
        return cls(
            price=record.price_decimal,
            price_raw=record.price,
            timestamp=record.timestamp,
            updater=record.updater,
            loading=False,
            error=None,
            last_update=now,
        )


@dataclass(slots=True)
class PipelineHealth:
    """Liveness of the fetch/publish pipeline."""
    last_success_ts: Optional[float] = None
    last_failure_ts: Optional[float] = None
    consecutive_failures: int = 0
    last_tx_id: Optional[str] = None
    last_error: Optional[str] = None
