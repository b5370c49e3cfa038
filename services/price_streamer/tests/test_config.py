"""Tests for config.py - environment loading and validation."""

import pytest

from price_streamer.config import StreamerConfig, derive_address
from price_streamer.errors import ConfigurationError
from price_streamer.price_source import CMC_API_URL
from price_streamer.schema import PRICE_SCHEMA

from conftest import ADDRESS, PRIVATE_KEY, SCHEMA_ID

OTHER_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


def publishing_config(**overrides) -> StreamerConfig:
    values = dict(
        cmc_api_key="key",
        schema_id=SCHEMA_ID,
        publisher_address=ADDRESS,
        private_key=PRIVATE_KEY,
        rpc_url="http://gateway",
    )
    values.update(overrides)
    return StreamerConfig(**values)


class TestFromEnv:
    """Tests for StreamerConfig.from_env."""

    def test_defaults(self, clean_env):
        config = StreamerConfig.from_env()
        assert config.symbol == "BTC"
        assert config.cmc_api_url == CMC_API_URL
        assert config.fetch_interval_seconds == 60.0
        assert config.retry_delay_seconds == 30.0
        assert config.request_timeout_seconds == 15.0
        assert config.http_port == 8080
        assert config.backend == "rpc"
        assert config.publisher_address == ""

    def test_reads_variables(self, clean_env):
        clean_env.setenv("CMC_API_KEY", "abc")
        clean_env.setenv("PRICE_SCHEMA_ID", SCHEMA_ID)
        clean_env.setenv("PUBLISHER_ADDRESS", ADDRESS)
        clean_env.setenv("FETCH_INTERVAL_SECONDS", "10")
        clean_env.setenv("RETRY_DELAY_SECONDS", "5")
        clean_env.setenv("STREAM_BACKEND", "MEMORY")
        clean_env.setenv("HTTP_PORT", "9000")

        config = StreamerConfig.from_env()

        assert config.cmc_api_key == "abc"
        assert config.schema_id == SCHEMA_ID
        assert config.publisher_address == ADDRESS
        assert config.fetch_interval_seconds == 10.0
        assert config.retry_delay_seconds == 5.0
        assert config.backend == "memory"
        assert config.http_port == 9000

    def test_wallet_address_fallback(self, clean_env):
        clean_env.setenv("WALLET_ADDRESS", OTHER_ADDRESS)
        assert StreamerConfig.from_env().publisher_address == OTHER_ADDRESS

    def test_publisher_address_wins(self, clean_env):
        clean_env.setenv("WALLET_ADDRESS", OTHER_ADDRESS)
        clean_env.setenv("PUBLISHER_ADDRESS", ADDRESS)
        assert StreamerConfig.from_env().publisher_address == ADDRESS

    def test_address_derived_from_key(self, clean_env):
        clean_env.setenv("PRIVATE_KEY", PRIVATE_KEY)
        assert StreamerConfig.from_env().publisher_address == ADDRESS

    def test_invalid_key(self, clean_env):
        clean_env.setenv("PRIVATE_KEY", "0x1234")
        with pytest.raises(ConfigurationError, match="PRIVATE_KEY"):
            StreamerConfig.from_env()

    @pytest.mark.parametrize("name,value", [
        ("FETCH_INTERVAL_SECONDS", "soon"),
        ("RETRY_DELAY_SECONDS", "30s"),
        ("HTTP_PORT", "80.5"),
    ])
    def test_malformed_number(self, clean_env, name, value):
        clean_env.setenv(name, value)
        with pytest.raises(ConfigurationError, match=name):
            StreamerConfig.from_env()

    def test_from_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            f"CMC_API_KEY=from-file\nPRICE_SCHEMA_ID={SCHEMA_ID}\nHTTP_PORT=9100\n"
        )
        clean_env.setenv("HTTP_PORT", "9200")

        config = StreamerConfig.from_env_file(str(env_file))

        assert config.cmc_api_key == "from-file"
        assert config.schema_id == SCHEMA_ID
        # Environment wins over the file
        assert config.http_port == 9200


class TestValidate:
    """Tests for StreamerConfig.validate."""

    def test_valid(self):
        publishing_config().validate()

    def test_normalizes_schema_id(self):
        config = publishing_config(schema_id=SCHEMA_ID.upper().replace("0X", "0x"))
        config.validate()
        assert config.schema_id == SCHEMA_ID

    @pytest.mark.parametrize("overrides,message", [
        ({"cmc_api_key": ""}, "CMC_API_KEY"),
        ({"schema_id": ""}, "PRICE_SCHEMA_ID"),
        ({"schema_id": "0x" + "ab" * 32}, "does not match"),
        ({"publisher_address": ""}, "Publisher identity"),
        ({"publisher_address": "0x1234"}, "Invalid publisher"),
        ({"publisher_address": OTHER_ADDRESS}, "does not match PRIVATE_KEY"),
        ({"private_key": ""}, "PRIVATE_KEY"),
        ({"rpc_url": ""}, "RPC_URL"),
        ({"backend": "carrier-pigeon"}, "STREAM_BACKEND"),
        ({"fetch_interval_seconds": 0}, "fetch_interval_seconds"),
        ({"retry_delay_seconds": -1}, "retry_delay_seconds"),
        ({"fetch_interval_seconds": float("nan")}, "fetch_interval_seconds"),
        ({"request_timeout_seconds": 0}, "request_timeout_seconds"),
        ({"http_port": 70000}, "http_port"),
    ])
    def test_rejects(self, overrides, message):
        with pytest.raises(ConfigurationError, match=message):
            publishing_config(**overrides).validate()

    def test_memory_backend_needs_no_gateway(self):
        config = StreamerConfig(cmc_api_key="key", publisher_address=ADDRESS, backend="memory")
        config.validate()
        assert config.schema_id == PRICE_SCHEMA.schema_id

    def test_reader_only(self):
        config = StreamerConfig(rpc_url="http://gateway")
        config.validate(require_publisher=False)

    def test_derive_address(self):
        assert derive_address(PRIVATE_KEY) == ADDRESS
