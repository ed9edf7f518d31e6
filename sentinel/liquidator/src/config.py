"""
Configuration Management System

Hierarchical configuration loading:
1. Environment variables (highest priority; secrets only come from here)
2. config.yaml file
3. Built-in chain presets (lowest priority)
"""

import os
from typing import Optional, Dict, Any, List, Union
from pathlib import Path
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .types import ConfigurationError


MORPHO_API_VAULTS = "morpho-api"


# ============================================================================
# Chain Presets
# ============================================================================

CHAIN_PRESETS: Dict[int, Dict[str, Any]] = {
    1: {
        "name": "mainnet",
        "w_native": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        "morpho_address": "0xBBBBBbbBBb9cC5e90e3b3Af64bdAF62C37EEFFCb",
        "adaptive_curve_irm_address": "0x870aC11D48B15DB9a138Cf899d20F13F79Ba00BC",
        "pre_liquidation_factory_address": "0x6FF33615e792E35ed1026ea7cACCf42D9BF83476",
        "start_block": 18883124,
        "uniswap_v3_factory": "0x1F98431c8aD98523631AE4a59f267346ea31F984",
        "uniswap_v3_router": "0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45",
        "liquidity_venues": ["erc20_wrapper", "erc4626", "uniswap_v3"],
        "check_profit": True,
        "use_flashbots": True,
        "block_interval": 10,
    },
    8453: {
        "name": "base",
        "w_native": "0x4200000000000000000000000000000000000006",
        "morpho_address": "0xBBBBBbbBBb9cC5e90e3b3Af64bdAF62C37EEFFCb",
        "adaptive_curve_irm_address": "0x46415998764C29aB2a25CbeA6254146D50D22687",
        "pre_liquidation_factory_address": "0x8cd16b62E170Ee0bA83D80e1F80E6085367e2aef",
        "start_block": 13977148,
        "uniswap_v3_factory": "0x33128a8fC17869897dcE68Ed026d694621f6FDfD",
        "uniswap_v3_router": "0x2626664c2603336E57B271c5C0b26F421741e481",
        "liquidity_venues": ["erc20_wrapper", "erc4626", "uniswap_v3"],
        "check_profit": False,
        "use_flashbots": False,
        "block_interval": 30,
    },
    10: {"name": "optimism", "w_native": "0x4200000000000000000000000000000000000006", "block_interval": 30},
    130: {"name": "unichain", "w_native": "0x4200000000000000000000000000000000000006", "block_interval": 30},
    747474: {"name": "katana", "w_native": "0xEE7D8BCFb72bC1880D0Cf19822eB0A2e6577aB62", "block_interval": 30},
    42161: {"name": "arbitrum", "w_native": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", "block_interval": 30},
    999: {"name": "hyperevm", "w_native": "0x5555555555555555555555555555555555555555", "block_interval": 50},
    143: {"name": "monad", "w_native": "0x3bd359C1119dA7Da1D913D1C4D2B7c461115433A", "block_interval": 50},
}


# ============================================================================
# Models
# ============================================================================

class ChainConfig(BaseModel):
    """Per-chain indexer and liquidation settings"""
    chain_id: int = Field(..., description="EVM chain id")
    name: str = Field(default="")
    rpc_url: Optional[str] = Field(default=None, description="HTTP RPC endpoint")
    ws_url: Optional[str] = Field(default=None, description="WebSocket endpoint for newHeads")

    # Protocol contracts
    morpho_address: str = Field(..., description="Morpho Blue singleton")
    adaptive_curve_irm_address: str = Field(..., description="AdaptiveCurveIrm contract")
    pre_liquidation_factory_address: Optional[str] = None
    start_block: int = Field(..., description="First block to index")
    max_block_range: int = Field(default=10_000)

    # Liquidation options
    w_native: str = Field(..., description="Wrapped native asset, used to price gas")
    vault_whitelist: Union[List[str], str] = Field(default=MORPHO_API_VAULTS)
    additional_markets_whitelist: List[str] = Field(default_factory=list)
    check_profit: bool = Field(default=False)
    liquidation_buffer_bps: int = Field(default=50)
    use_flashbots: bool = Field(default=False)
    block_interval: int = Field(default=1)
    position_source: str = Field(default="indexer", description="'indexer' or 'morpho-api'")
    executor_address: Optional[str] = None
    treasury_address: Optional[str] = None
    liquidation_private_key: Optional[str] = Field(default=None, repr=False)
    max_requests_per_second: int = Field(default=100)

    # Conversion venues, tried in order
    liquidity_venues: List[str] = Field(default_factory=lambda: ["erc20_wrapper", "erc4626"])
    erc20_wrappers: Dict[str, str] = Field(default_factory=dict, description="wrapper -> underlying")
    uniswap_v3_factory: Optional[str] = None
    uniswap_v3_router: Optional[str] = None
    uniswap_v3_fee_tiers: List[int] = Field(default_factory=lambda: [100, 500, 3000, 10000])

    # Price adapters, tried in order
    pricers: List[str] = Field(default_factory=lambda: ["defillama"])
    chainlink_feeds: Dict[str, str] = Field(default_factory=dict, description="asset -> USD feed")
    defillama_chain: Optional[str] = None

    @field_validator('vault_whitelist')
    @classmethod
    def validate_vault_whitelist(cls, v):
        if isinstance(v, str) and v != MORPHO_API_VAULTS:
            raise ValueError(f"vault_whitelist must be a list of addresses or '{MORPHO_API_VAULTS}'")
        return v

    @field_validator('position_source')
    @classmethod
    def validate_position_source(cls, v):
        if v not in ("indexer", MORPHO_API_VAULTS):
            raise ValueError(f"Unknown position source: {v}")
        return v

    @field_validator('liquidation_buffer_bps')
    @classmethod
    def validate_buffer(cls, v):
        if not 0 <= v < 10_000:
            raise ValueError("liquidation_buffer_bps must be in [0, 10000)")
        return v


class IndexerConfig(BaseModel):
    """Indexer persistence and retry settings"""
    checkpoint_path: str = Field(default=".indexer")
    max_retries: int = Field(default=5)
    initial_backoff_seconds: float = Field(default=1.0)


class LiquidationConfig(BaseModel):
    """Engine-wide liquidation policy"""
    always_realize_bad_debt: bool = Field(default=True)
    markets_fetching_cooldown_period: int = Field(default=60 * 60 * 24)
    position_liquidation_cooldown_enabled: bool = Field(default=False)
    position_liquidation_cooldown_period: int = Field(default=60 * 60)
    flashbots_relay_url: str = Field(default="https://relay.flashbots.net")
    flashbots_private_key: Optional[str] = Field(default=None, repr=False)


class DatabaseConfig(BaseModel):
    """Outcome persistence; disabled unless configured"""
    enabled: bool = Field(default=False)
    url: Optional[str] = Field(default=None, description="Full SQLAlchemy URL, overrides the fields below")
    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    database: str = Field(default="sentinel")
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    pool_size: int = Field(default=5)
    max_overflow: int = Field(default=10)

    @property
    def connection_url(self) -> str:
        if self.url:
            return self.url
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class RedisConfig(BaseModel):
    """Shared cooldown store; disabled unless configured"""
    enabled: bool = Field(default=False)
    host: str = Field(default="localhost")
    port: int = Field(default=6379)
    password: Optional[str] = Field(default=None, repr=False)
    db: int = Field(default=0)


class MonitoringConfig(BaseModel):
    """Logging and metrics configuration"""
    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="logs")
    cloudwatch_enabled: bool = Field(default=False)
    cloudwatch_region: str = Field(default="us-east-1")
    cloudwatch_log_group: str = Field(default="Sentinel")
    metrics_enabled: bool = Field(default=True)
    metrics_port: int = Field(default=8000)


class ApiConfig(BaseModel):
    """Off-chain discovery API"""
    morpho_api_url: str = Field(default="https://blue-api.morpho.org/graphql")
    request_timeout_seconds: float = Field(default=30.0)


class SentinelConfig(BaseModel):
    """Main configuration model"""
    chains: List[ChainConfig]
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    liquidation: LiquidationConfig = Field(default_factory=LiquidationConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator('chains')
    @classmethod
    def validate_chains(cls, v):
        if not v:
            raise ValueError("At least one chain must be configured")
        ids = [c.chain_id for c in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate chain ids in configuration")
        return v

    def get_chain(self, chain_id: int) -> ChainConfig:
        for chain in self.chains:
            if chain.chain_id == chain_id:
                return chain
        raise ConfigurationError(f"Chain {chain_id} is not configured")


# ============================================================================
# Loader
# ============================================================================

class ConfigLoader:
    """Configuration loader with hierarchical loading"""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else Path("config.yaml")
        self._config: Optional[SentinelConfig] = None

    def load(self) -> SentinelConfig:
        """Load configuration from all sources"""
        config_data = self._load_yaml()
        config_data = self._apply_chain_presets(config_data)
        config_data = self._apply_env_overrides(config_data)

        try:
            self._config = SentinelConfig(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        return self._config

    def _load_yaml(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _apply_chain_presets(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Fill unset chain fields from the built-in presets"""
        for chain in config_data.get('chains') or []:
            for key, value in CHAIN_PRESETS.get(chain.get('chain_id'), {}).items():
                chain.setdefault(key, value)
        return config_data

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides"""
        # Per-chain endpoints and secrets
        for chain in config_data.get('chains') or []:
            chain_id = chain.get('chain_id')
            for env_name, key in (
                ('RPC_URL', 'rpc_url'),
                ('WS_URL', 'ws_url'),
                ('LIQUIDATION_PRIVATE_KEY', 'liquidation_private_key'),
                ('EXECUTOR_ADDRESS', 'executor_address'),
                ('TREASURY_ADDRESS', 'treasury_address'),
            ):
                value = os.getenv(f'{env_name}_{chain_id}')
                if value:
                    chain[key] = value

        if os.getenv('FLASHBOTS_PRIVATE_KEY'):
            config_data.setdefault('liquidation', {})['flashbots_private_key'] = os.getenv('FLASHBOTS_PRIVATE_KEY')

        if os.getenv('INDEXER_CHECKPOINT_PATH'):
            config_data.setdefault('indexer', {})['checkpoint_path'] = os.getenv('INDEXER_CHECKPOINT_PATH')

        # Database credentials
        if os.getenv('DB_URL'):
            config_data.setdefault('database', {})['url'] = os.getenv('DB_URL')
        if os.getenv('DB_USER'):
            config_data.setdefault('database', {})['user'] = os.getenv('DB_USER')
        if os.getenv('DB_PASSWORD'):
            config_data.setdefault('database', {})['password'] = os.getenv('DB_PASSWORD')
        if os.getenv('DB_HOST'):
            config_data.setdefault('database', {})['host'] = os.getenv('DB_HOST')

        # Redis credentials
        if os.getenv('REDIS_HOST'):
            config_data.setdefault('redis', {})['host'] = os.getenv('REDIS_HOST')
        if os.getenv('REDIS_PASSWORD'):
            config_data.setdefault('redis', {})['password'] = os.getenv('REDIS_PASSWORD')

        # Monitoring
        if os.getenv('LOG_LEVEL'):
            config_data.setdefault('monitoring', {})['log_level'] = os.getenv('LOG_LEVEL')

        if os.getenv('MORPHO_API_URL'):
            config_data.setdefault('api', {})['morpho_api_url'] = os.getenv('MORPHO_API_URL')

        return config_data

    @property
    def config(self) -> SentinelConfig:
        """Get loaded configuration"""
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config


# Global config instance
_config_loader: Optional[ConfigLoader] = None


def get_config() -> SentinelConfig:
    """Get global configuration instance"""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
        _config_loader.load()
    return _config_loader.config


def init_config(config_path: Optional[Path] = None) -> SentinelConfig:
    """Initialize configuration with custom path"""
    global _config_loader
    _config_loader = ConfigLoader(config_path)
    return _config_loader.load()
