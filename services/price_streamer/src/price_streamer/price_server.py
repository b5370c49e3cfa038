"""HTTP server for the price read/trigger endpoints."""

import logging
from dataclasses import asdict
from typing import Optional

from aiohttp import web
import orjson

from .codec import format_price, format_timestamp
from .errors import (
    ConfigurationError,
    PipelineBusyError,
    PublishError,
    RateLimitError,
    UpstreamError,
)
from .health import HealthTracker
from .scheduler import PriceScheduler
from .subscriber import LatestPriceReader
from .types import PriceRecord, UINT64_MAX

logger = logging.getLogger(__name__)

SCHEMA_NOT_CONFIGURED = (
    "Schema not configured. Run `price-streamer deploy-schema` and set PRICE_SCHEMA_ID"
)


def record_payload(record: PriceRecord) -> dict:
    """JSON body for a decoded record."""
    return {
        "price": float(record.price_decimal),
        "priceCents": record.price if record.price <= UINT64_MAX else str(record.price),
        "priceFormatted": format_price(record.price),
        "timestamp": record.timestamp,
        "timestampFormatted": format_timestamp(record.timestamp),
        "updater": record.updater,
    }


def json_response(body: dict, status: int = 200) -> web.Response:
    return web.Response(
        status=status,
        content_type="application/json",
        body=orjson.dumps(body),
    )


class PriceServer:
    """
    HTTP server for price consumers.

    Endpoints:
    - GET /api/btc-price - Latest published record
    - POST /api/btc-price - Run one fetch+publish now, return the new record
    - GET /health - Pipeline health
    """

    def __init__(
        self,
        reader: LatestPriceReader,
        scheduler: Optional[PriceScheduler] = None,
        health: Optional[HealthTracker] = None,
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        """
        Initialize the server.

        Args:
            reader: Reader for the latest record
            scheduler: Scheduler for manual runs and /health stats
                (POST disabled if None)
            health: Pipeline health tracker
            host: Host to bind to
            port: Port to bind to
        """
        self.reader = reader
        self.scheduler = scheduler
        self.health = health
        self.host = host
        self.port = port

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def handle_get_price(self, request: web.Request) -> web.Response:
        """
        Handle GET /api/btc-price.

        Returns the latest record, 404 if nothing is published yet.
        """
        if not self.reader.schema_id:
            return json_response({"success": False, "error": SCHEMA_NOT_CONFIGURED}, status=500)

        try:
            record = await self.reader.read_latest()
        except Exception as e:
            logger.error(f"Error fetching price: {e}", exc_info=True)
            return json_response(
                {"success": False, "error": str(e) or "Failed to fetch price"},
                status=500,
            )

        if record is None:
            return json_response(
                {"success": False, "error": "No price data available yet"},
                status=404,
            )

        return json_response({"success": True, "data": record_payload(record)})

    async def handle_trigger(self, request: web.Request) -> web.Response:
        """
        Handle POST /api/btc-price.

        Runs one fetch+publish through the scheduler and returns the
        re-read record. Answers 409 while another run is in flight.
        """
        if self.scheduler is None:
            return json_response(
                {"success": False, "error": "Manual updates are disabled"},
                status=405,
            )

        logger.info("Manual price update triggered")

        try:
            self.scheduler.publisher.ensure_configured()
            published = await self.scheduler.run_now()
        except ConfigurationError as e:
            return json_response({"success": False, "error": str(e)}, status=500)
        except PipelineBusyError as e:
            return json_response({"success": False, "error": str(e)}, status=409)
        except RateLimitError as e:
            return json_response({"success": False, "error": str(e)}, status=429)
        except (UpstreamError, PublishError) as e:
            logger.error(f"Manual update failed: {e}")
            return json_response({"success": False, "error": str(e)}, status=502)
        except Exception as e:
            logger.error(f"Error updating price: {e}", exc_info=True)
            return json_response(
                {"success": False, "error": str(e) or "Failed to update price"},
                status=500,
            )

        try:
            record = await self.reader.read_latest()
        except Exception as e:
            logger.error(f"Error reading back price: {e}", exc_info=True)
            return json_response({"success": False, "error": str(e)}, status=500)

        if record is None:
            return json_response({
                "success": True,
                "message": "Price updated but data not yet available",
                "txId": published.tx_id,
            })

        return json_response({
            "success": True,
            "message": "Price updated successfully",
            "txId": published.tx_id,
            "data": record_payload(record),
        })

    async def handle_health(self, request: web.Request) -> web.Response:
        """
        Handle GET /health.

        Returns health status.
        """
        health_data = self.health.to_dict() if self.health else {"healthy": True}

        if self.scheduler:
            health_data["scheduler"] = {
                "state": self.scheduler.state.name,
                "retry_pending": self.scheduler.retry_pending,
                **asdict(self.scheduler.stats),
            }

        status_code = 200 if health_data.get("healthy") else 503
        return json_response(health_data, status=status_code)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/btc-price", self.handle_get_price)
        app.router.add_post("/api/btc-price", self.handle_trigger)
        app.router.add_get("/health", self.handle_health)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        logger.info(f"Price server started on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()

        logger.info("Price server stopped")
