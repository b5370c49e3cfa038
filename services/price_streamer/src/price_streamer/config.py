"""Configuration for the BTC price streamer."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from eth_account import Account
from eth_utils import is_address, to_checksum_address

from .errors import ConfigurationError
from .price_source import CMC_API_URL
from .schema import PRICE_SCHEMA, check_schema_id

BACKENDS = ("rpc", "memory")


def derive_address(private_key: str) -> str:
    """Address of the account holding private_key."""
    try:
        return Account.from_key(private_key).address
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"PRIVATE_KEY is not a valid key: {e}") from e


def _env_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


def _env_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


@dataclass
class StreamerConfig:
    """
    Configuration container for the price streamer.

    Loaded from environment variables with sensible defaults.
    """
    # Price source
    cmc_api_key: str = ""
    cmc_api_url: str = CMC_API_URL
    symbol: str = "BTC"

    # Stream gateway
    schema_id: str = ""
    publisher_address: str = ""
    private_key: str = ""
    rpc_url: str = ""
    ws_url: str = ""
    backend: str = "rpc"

    # Cadence
    fetch_interval_seconds: float = 60.0
    retry_delay_seconds: float = 30.0
    request_timeout_seconds: float = 15.0

    # HTTP server settings
    http_host: str = "0.0.0.0"
    http_port: int = 8080

    # Health
    stale_threshold_seconds: float = 180.0

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "StreamerConfig":
        """Load configuration from environment variables."""
        private_key = os.getenv("PRIVATE_KEY", "")
        publisher_address = os.getenv("PUBLISHER_ADDRESS") or os.getenv("WALLET_ADDRESS", "")
        if not publisher_address and private_key:
            publisher_address = derive_address(private_key)

        return cls(
            cmc_api_key=os.getenv("CMC_API_KEY", ""),
            cmc_api_url=os.getenv("CMC_API_URL", CMC_API_URL),
            symbol=os.getenv("PRICE_SYMBOL", "BTC"),
            schema_id=os.getenv("PRICE_SCHEMA_ID", ""),
            publisher_address=publisher_address,
            private_key=private_key,
            rpc_url=os.getenv("RPC_URL", ""),
            ws_url=os.getenv("WS_URL", ""),
            backend=os.getenv("STREAM_BACKEND", "rpc").lower(),
            fetch_interval_seconds=_env_float("FETCH_INTERVAL_SECONDS", "60"),
            retry_delay_seconds=_env_float("RETRY_DELAY_SECONDS", "30"),
            request_timeout_seconds=_env_float("REQUEST_TIMEOUT_SECONDS", "15"),
            http_host=os.getenv("HTTP_HOST", "0.0.0.0"),
            http_port=_env_int("HTTP_PORT", "8080"),
            stale_threshold_seconds=_env_float("STALE_THRESHOLD_SECONDS", "180"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @classmethod
    def from_env_file(cls, path: Optional[str] = None) -> "StreamerConfig":
        """
        Load a .env file into the environment, then read it.

        Variables already set in the environment take precedence.
        """
        load_dotenv(path, override=False)
        return cls.from_env()

    def validate(self, require_publisher: bool = True) -> None:
        """
        Validate configuration values.

        Args:
            require_publisher: Also check what a publishing process needs
                (API key, schema id, identity, gateway key)
        """
        if not self.symbol:
            raise ConfigurationError("symbol must not be empty")

        if self.backend not in BACKENDS:
            raise ConfigurationError(f"STREAM_BACKEND must be one of {', '.join(BACKENDS)}")

        if not self.fetch_interval_seconds > 0:
            raise ConfigurationError("fetch_interval_seconds must be positive")

        if not self.retry_delay_seconds > 0:
            raise ConfigurationError("retry_delay_seconds must be positive")

        if not self.request_timeout_seconds > 0:
            raise ConfigurationError("request_timeout_seconds must be positive")

        if self.http_port < 1 or self.http_port > 65535:
            raise ConfigurationError("http_port must be between 1 and 65535")

        if self.publisher_address and not is_address(self.publisher_address):
            raise ConfigurationError(f"Invalid publisher address: {self.publisher_address}")

        if self.backend == "rpc" and not self.rpc_url:
            raise ConfigurationError("RPC_URL is required for the rpc backend")

        if not require_publisher:
            return

        if not self.cmc_api_key:
            raise ConfigurationError("CMC_API_KEY is not set")

        if self.backend == "memory" and not self.schema_id:
            # The in-process store registers the schema itself on startup
            self.schema_id = PRICE_SCHEMA.schema_id
        self.schema_id = check_schema_id(self.schema_id, PRICE_SCHEMA)

        if not self.publisher_address:
            raise ConfigurationError(
                "Publisher identity missing: set PUBLISHER_ADDRESS, WALLET_ADDRESS or PRIVATE_KEY"
            )

        if self.backend == "rpc":
            if not self.private_key:
                raise ConfigurationError("PRIVATE_KEY is required to publish through the gateway")
            signer = derive_address(self.private_key)
            if signer != to_checksum_address(self.publisher_address):
                raise ConfigurationError(
                    f"Publisher {self.publisher_address} does not match PRIVATE_KEY account {signer}"
                )
