"""Stream schema definitions shared by publisher and subscribers."""

from dataclasses import dataclass

from eth_utils import keccak

from .errors import ConfigurationError

# Zero bytes32 for top-level (parentless) schemas
ZERO_BYTES32 = "0x" + "00" * 32

# Fixed key for the price record (one record, overwritten on each publish)
PRICE_DATA_ID = "0x" + "00" * 31 + "01"

# Event emitted alongside each write
PRICE_EVENT_ID = "PriceUpdated"


@dataclass(frozen=True, slots=True)
class SchemaDescriptor:
    """
    Static field layout agreed out-of-band between writer and readers.

    Never mutated at runtime; a mismatch is a configuration error.
    """
    names: tuple[str, ...]
    types: tuple[str, ...]

    @property
    def canonical(self) -> str:
        """Schema string as registered with the stream service."""
        return "(" + ",".join(self.types) + ")"

    @property
    def schema_id(self) -> str:
        """bytes32 schema identifier derived from the canonical string."""
        return compute_schema_id(self.canonical)


@dataclass(frozen=True, slots=True)
class EventParam:
    name: str
    param_type: str
    indexed: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "paramType": self.param_type,
            "isIndexed": self.indexed,
        }


@dataclass(frozen=True, slots=True)
class EventSchema:
    """Event layout: indexed params go to topics, the rest to the payload."""
    event_id: str
    params: tuple[EventParam, ...]

    @property
    def signature(self) -> str:
        args = ", ".join(
            f"{p.param_type} indexed {p.name}" if p.indexed else f"{p.param_type} {p.name}"
            for p in self.params
        )
        return f"{self.event_id}({args})"

    def to_dict(self) -> dict:
        return {
            "params": [p.to_dict() for p in self.params],
            "eventTopic": self.signature,
        }


PRICE_SCHEMA = SchemaDescriptor(
    names=("price", "timestamp", "updater"),
    types=("uint256", "uint64", "address"),
)

PRICE_EVENT_SCHEMA = EventSchema(
    event_id=PRICE_EVENT_ID,
    params=(
        EventParam("price", "uint256", indexed=True),
        EventParam("timestamp", "uint64"),
    ),
)


def compute_schema_id(schema: str) -> str:
    """keccak-256 of the schema string, as a 0x-prefixed bytes32."""
    return "0x" + keccak(text=schema).hex()


def check_schema_id(schema_id: str, descriptor: SchemaDescriptor = PRICE_SCHEMA) -> str:
    """
    Verify a configured schema id against the descriptor.

    Returns:
        The normalized (lowercase) schema id

    Raises:
        ConfigurationError: if missing or not derived from the descriptor
    """
    if not schema_id:
        raise ConfigurationError(
            "PRICE_SCHEMA_ID not set. Run `price-streamer deploy-schema` first"
        )
    normalized = schema_id.lower()
    if normalized != descriptor.schema_id:
        raise ConfigurationError(
            f"PRICE_SCHEMA_ID {schema_id} does not match schema "
            f"{descriptor.canonical} ({descriptor.schema_id})"
        )
    return normalized
