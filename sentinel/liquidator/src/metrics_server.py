"""
Prometheus Metrics Server

Exposes indexer and liquidation metrics via HTTP for Prometheus scraping.
"""

from typing import Optional
from aiohttp import web
from prometheus_client import (
    Counter, Gauge, Info,
    generate_latest, CONTENT_TYPE_LATEST
)

from .logging_config import get_logger


# Liquidation attempts by outcome
liquidations_counter = Counter(
    'sentinel_liquidations_total',
    'Liquidation attempts by kind and outcome',
    ['chain_id', 'kind', 'outcome']
)

liquidatable_positions_gauge = Gauge(
    'sentinel_liquidatable_positions',
    'Positions with non-zero seizable collateral at the last run',
    ['chain_id']
)

# Indexer
last_synced_block_gauge = Gauge(
    'sentinel_indexer_last_synced_block',
    'Last block committed by the indexer',
    ['chain_id']
)

sync_retries_counter = Counter(
    'sentinel_sync_chunk_retries_total',
    'Chunk sync attempts that failed and were retried',
    ['chain_id']
)

# Run cycles
bot_runs_counter = Counter(
    'sentinel_bot_runs_total',
    'Bot run cycles by status (ok, error)',
    ['chain_id', 'status']
)

bot_info = Info(
    'sentinel_bot',
    'Information about the Sentinel bot'
)

start_time_gauge = Gauge(
    'sentinel_start_time_seconds',
    'Unix timestamp when the bot started'
)


class MetricsServer:
    """
    HTTP server that exposes Prometheus metrics.

    Serves metrics at the /metrics endpoint only.
    """

    def __init__(self, port: int = 8000):
        self.port = port
        self.logger = get_logger("metrics_server")
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._running = False

    async def start(self):
        """Start the metrics HTTP server"""
        try:
            self.logger.info("starting_metrics_server", port=self.port)

            self.app = web.Application()
            self.app.router.add_get('/metrics', self.handle_metrics)

            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, '0.0.0.0', self.port)
            await self.site.start()

            self._running = True
            self.logger.info("metrics_server_started", url=f"http://0.0.0.0:{self.port}/metrics")

        except Exception as e:
            self.logger.error("metrics_server_start_failed", error=str(e), exc_info=True)
            raise

    async def stop(self):
        """Stop the metrics HTTP server"""
        try:
            self._running = False

            if self.site:
                await self.site.stop()

            if self.runner:
                await self.runner.cleanup()

            self.logger.info("metrics_server_stopped")

        except Exception as e:
            self.logger.error("metrics_server_stop_failed", error=str(e), exc_info=True)

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """Return Prometheus metrics in text format"""
        try:
            return web.Response(
                body=generate_latest(),
                headers={'Content-Type': CONTENT_TYPE_LATEST}
            )

        except Exception as e:
            self.logger.error("metrics_generation_failed", error=str(e), exc_info=True)
            return web.Response(
                text=f"Error generating metrics: {e}",
                status=500
            )

    @staticmethod
    def record_liquidation(chain_id: int, kind: str, outcome: str):
        """Count one liquidation attempt"""
        liquidations_counter.labels(chain_id=str(chain_id), kind=kind, outcome=outcome).inc()

    @staticmethod
    def update_liquidatable_positions(chain_id: int, count: int):
        liquidatable_positions_gauge.labels(chain_id=str(chain_id)).set(count)

    @staticmethod
    def update_last_synced_block(chain_id: int, block_number: int):
        last_synced_block_gauge.labels(chain_id=str(chain_id)).set(block_number)

    @staticmethod
    def record_sync_retry(chain_id: int):
        sync_retries_counter.labels(chain_id=str(chain_id)).inc()

    @staticmethod
    def record_bot_run(chain_id: int, status: str):
        bot_runs_counter.labels(chain_id=str(chain_id), status=status).inc()

    @staticmethod
    def set_bot_info(chain_ids: str, version: str):
        """Set bot information"""
        bot_info.info({
            'chain_ids': chain_ids,
            'version': version
        })

    @staticmethod
    def set_start_time(timestamp: float):
        """Set bot start time"""
        start_time_gauge.set(timestamp)
