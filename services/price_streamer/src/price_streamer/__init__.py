"""Price Streamer - BTC price relay onto a blockchain data stream.

This service is responsible for:
- Polling the CoinMarketCap quotes API for the BTC/USD price
- Encoding each price as an ABI tuple record
- Writing the record and a PriceUpdated event atomically to the stream store
- Serving and subscribing to the latest published record
"""

__version__ = "0.1.0"
