"""
Main Orchestrator

Entry point for the Sentinel liquidation bot. Builds one isolated
indexer + engine pair per configured chain and drives each from new blocks.
"""

import argparse
import asyncio
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

from .. import __version__
from .block_watcher import BlockWatcher
from .checkpoint import CheckpointManager
from .config import ChainConfig, SentinelConfig, init_config
from .cooldown import MarketsFetchingCooldown, PositionLiquidationCooldown
from .database import get_redis_manager, init_database, init_redis
from .execution_planner import ExecutionPlanner
from .flashbots import FlashbotsRelay
from .indexer import Indexer
from .ledger import Web3LedgerClient
from .liquidation_bot import LiquidationBot
from .logging_config import get_logger, init_logging
from .metrics_server import MetricsServer
from .morpho_api import MorphoApiClient
from .pricers import create_pricer
from .types import ConfigurationError, SentinelError
from .venues import create_liquidity_venue


class ChainRunner:
    """
    Wires and runs one chain.

    A run is triggered on every `block_interval`-th block; blocks arriving
    while a run is in flight are dropped. A failed initial catch-up is
    retried with capped exponential backoff. Errors are logged and never
    leave the runner.
    """

    def __init__(self, chain_config: ChainConfig, config: SentinelConfig):
        self.chain_config = chain_config
        self.config = config
        self.chain_id = chain_config.chain_id
        self.logger = get_logger(f"runner.{chain_config.name or chain_config.chain_id}")

        self._run_task: Optional[asyncio.Task] = None
        self._running = False

        self.base_backoff = 1.0  # seconds
        self.max_backoff = 60.0  # seconds

        self._build()

    def _build(self):
        chain = self.chain_config
        liquidation = self.config.liquidation

        if not chain.executor_address:
            raise ConfigurationError(f"Chain {chain.chain_id}: executor_address is required")

        self.ledger = Web3LedgerClient(
            rpc_url=chain.rpc_url,
            chain_id=chain.chain_id,
            private_key=chain.liquidation_private_key,
            max_requests_per_second=chain.max_requests_per_second,
        )

        self.indexer = Indexer(
            chain_id=chain.chain_id,
            ledger=self.ledger,
            start_block=chain.start_block,
            morpho_address=chain.morpho_address,
            adaptive_curve_irm_address=chain.adaptive_curve_irm_address,
            pre_liquidation_factory_address=chain.pre_liquidation_factory_address,
            max_block_range=chain.max_block_range,
            max_retries=self.config.indexer.max_retries,
            initial_backoff=self.config.indexer.initial_backoff_seconds,
            checkpoint=CheckpointManager(chain.chain_id, self.config.indexer.checkpoint_path),
        )

        flashbots_relay = None
        if chain.use_flashbots:
            if liquidation.flashbots_private_key:
                flashbots_relay = FlashbotsRelay(
                    self.ledger, liquidation.flashbots_private_key, liquidation.flashbots_relay_url
                )
            else:
                self.logger.warning("flashbots_key_missing", chain_id=chain.chain_id)

        pricers = None
        if chain.check_profit:
            pricers = [create_pricer(name, self.ledger, chain) for name in chain.pricers]

        self.planner = ExecutionPlanner(
            ledger=self.ledger,
            executor_address=chain.executor_address,
            treasury_address=chain.treasury_address or self.ledger.account_address,
            w_native=chain.w_native,
            pricers=pricers,
            always_realize_bad_debt=liquidation.always_realize_bad_debt,
            flashbots_relay=flashbots_relay,
        )

        position_cooldown = None
        if liquidation.position_liquidation_cooldown_enabled:
            position_cooldown = PositionLiquidationCooldown(
                liquidation.position_liquidation_cooldown_period, redis=get_redis_manager()
            )

        self.bot = LiquidationBot(
            chain_config=chain,
            indexer=self.indexer,
            planner=self.planner,
            liquidity_venues=[create_liquidity_venue(name, self.ledger, chain) for name in chain.liquidity_venues],
            markets_cooldown=MarketsFetchingCooldown(liquidation.markets_fetching_cooldown_period),
            position_cooldown=position_cooldown,
            morpho_api=MorphoApiClient(self.config.api.morpho_api_url, self.config.api.request_timeout_seconds),
        )

        self.watcher = BlockWatcher(self.on_block, ws_url=chain.ws_url, ledger=self.ledger)

    async def start(self):
        """Catch up the indexer, then follow new blocks"""
        self._running = True
        if not await self._init_indexer() or not self._running:
            return

        try:
            await self.watcher.start()
        except Exception as e:
            self.logger.error("chain_runner_failed", chain_id=self.chain_id, error=str(e), exc_info=True)

    async def _init_indexer(self) -> bool:
        """Retry the initial catch-up with capped exponential backoff until it succeeds or stop() is called"""
        backoff = self.base_backoff
        while self._running:
            try:
                self.logger.info("indexer_initializing", chain_id=self.chain_id)
                await self.indexer.init()
                MetricsServer.update_last_synced_block(self.chain_id, self.indexer.last_synced_block)
                self.logger.info("indexer_ready", chain_id=self.chain_id, block=self.indexer.last_synced_block)
                return True
            except Exception as e:
                self.logger.error("indexer_init_failed", chain_id=self.chain_id, error=str(e), retry_in=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff)
        return False

    async def stop(self):
        self._running = False
        await self.watcher.stop()
        if self._run_task and not self._run_task.done():
            await self._run_task
        await self.indexer.wait_for_backfills()

    async def on_block(self, block_number: int):
        if block_number % self.chain_config.block_interval != 0:
            return
        if self._run_task is not None and not self._run_task.done():
            self.logger.debug("run_in_flight", chain_id=self.chain_id, block=block_number)
            return
        self._run_task = asyncio.create_task(self._run_once(block_number))

    async def _run_once(self, block_number: int):
        try:
            reports = await self.bot.run()
            MetricsServer.record_bot_run(self.chain_id, "ok")
            MetricsServer.update_last_synced_block(self.chain_id, self.indexer.last_synced_block)
            self.logger.info("run_completed", chain_id=self.chain_id, block=block_number, attempts=len(reports))
        except SentinelError as e:
            MetricsServer.record_bot_run(self.chain_id, "error")
            self.logger.error("run_failed", chain_id=self.chain_id, block=block_number, error=str(e))
        except Exception as e:
            MetricsServer.record_bot_run(self.chain_id, "error")
            self.logger.error(
                "run_failed", chain_id=self.chain_id, block=block_number, error=str(e), exc_info=True
            )


def build_runners(config: SentinelConfig, chain_ids: Optional[List[int]] = None) -> List[ChainRunner]:
    """One runner per selected chain with an RPC URL and a liquidation key"""
    logger = get_logger("main")
    runners = []
    for chain in config.chains:
        if chain_ids and chain.chain_id not in chain_ids:
            continue
        if not chain.rpc_url or not chain.liquidation_private_key:
            logger.warning("chain_skipped", chain_id=chain.chain_id, reason="missing rpc_url or liquidation key")
            continue
        try:
            runners.append(ChainRunner(chain, config))
        except ConfigurationError as e:
            logger.error("chain_skipped", chain_id=chain.chain_id, reason=str(e))
    return runners


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Sentinel Morpho Blue Liquidation Bot')
    parser.add_argument('--config', default='config.yaml', help='Path to the YAML configuration file')
    parser.add_argument(
        '--chain',
        type=int,
        action='append',
        dest='chains',
        help='Only run this chain id (repeatable)'
    )
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None):
    """
    Main entry point for the Sentinel bot.

    Initializes configuration, logging and persistence, then runs every
    selected chain until SIGINT/SIGTERM.
    """
    args = parse_args(argv)

    # Load configuration first (before logging)
    config = init_config(Path(args.config))

    init_logging(
        log_dir=Path(config.monitoring.log_dir),
        log_level=config.monitoring.log_level,
        enable_cloudwatch=config.monitoring.cloudwatch_enabled,
        cloudwatch_region=config.monitoring.cloudwatch_region,
        cloudwatch_log_group=config.monitoring.cloudwatch_log_group,
    )
    logger = get_logger("main")

    if config.database.enabled:
        init_database(config.database)
    if config.redis.enabled:
        init_redis(config.redis)

    runners = build_runners(config, args.chains)
    if not runners:
        logger.critical("no_chains_to_run")
        sys.exit(1)

    metrics_server = None
    if config.monitoring.metrics_enabled:
        metrics_server = MetricsServer(port=config.monitoring.metrics_port)
        await metrics_server.start()
        MetricsServer.set_bot_info(
            chain_ids=",".join(str(r.chain_id) for r in runners),
            version=__version__,
        )
        MetricsServer.set_start_time(time.time())

    logger.info("sentinel_starting", chains=[r.chain_id for r in runners], version=__version__)

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info("shutdown_signal_received", signal=sig)
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    tasks = [asyncio.create_task(runner.start()) for runner in runners]
    await shutdown_event.wait()

    for runner in runners:
        await runner.stop()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    if metrics_server:
        await metrics_server.stop()

    logger.info("sentinel_shutdown_complete")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
