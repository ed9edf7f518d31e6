"""
Database Schema and Connection Handling

SQLAlchemy model for liquidation outcomes and Redis access for shared
cooldown slots, with an in-memory fallback when Redis is unreachable.
"""

from typing import Optional, Dict
from contextlib import contextmanager
import logging

from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, Boolean,
    Numeric, Text, Index, Enum as SQLEnum, text
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import OperationalError, DisconnectionError
import redis
from redis.exceptions import ConnectionError as RedisConnectionError

from .types import (
    LiquidationKind, LiquidationOutcome, SubmissionPath, LiquidationReport, DatabaseError
)
from .config import DatabaseConfig, RedisConfig

logger = logging.getLogger(__name__)

Base = declarative_base()


# ============================================================================
# SQLAlchemy Models
# ============================================================================

class LiquidationAttemptModel(Base):
    """Liquidation attempts table"""
    __tablename__ = 'liquidation_attempts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    chain_id = Column(Integer, nullable=False, index=True)

    # Position
    kind = Column(SQLEnum(LiquidationKind), nullable=False)
    market_id = Column(String(66), nullable=False, index=True)
    borrower = Column(String(42), nullable=False, index=True)
    seized_assets = Column(Numeric(78, 0), nullable=False)
    bad_debt = Column(Boolean, nullable=False, default=False)

    # Outcome
    outcome = Column(SQLEnum(LiquidationOutcome), nullable=False, index=True)
    submission_path = Column(SQLEnum(SubmissionPath), nullable=True)
    tx_hash = Column(String(66), nullable=True, index=True)
    reason = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_chain_outcome', 'chain_id', 'outcome'),
    )

    @classmethod
    def from_report(cls, report: LiquidationReport) -> "LiquidationAttemptModel":
        return cls(
            timestamp=report.timestamp,
            chain_id=report.chain_id,
            kind=report.kind,
            market_id=report.market_id,
            borrower=report.user,
            seized_assets=report.seized_assets,
            bad_debt=report.bad_debt,
            outcome=report.outcome,
            submission_path=report.submission_path,
            tx_hash=report.tx_hash,
            reason=report.reason,
        )


# ============================================================================
# Database Connection Manager
# ============================================================================

class DatabaseManager:
    """Database connection manager with automatic reconnection"""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine = None
        self.SessionLocal = None
        self._initialize_engine()

    def _initialize_engine(self):
        """Initialize SQLAlchemy engine with connection pooling"""
        url = self.config.connection_url
        if url.startswith("sqlite"):
            self.engine = create_engine(url, echo=False)
        else:
            self.engine = create_engine(
                url,
                poolclass=QueuePool,
                pool_size=self.config.pool_size,
                max_overflow=self.config.max_overflow,
                pool_pre_ping=True,
                pool_recycle=3600,
                echo=False
            )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine
        )

        logger.info("Database engine initialized")

    def create_tables(self):
        """Create all tables if they don't exist"""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created/verified")
        except Exception as e:
            logger.error(f"Failed to create tables: {e}")
            raise DatabaseError(f"Table creation failed: {e}") from e

    @contextmanager
    def get_session(self) -> Session:
        """Get database session with automatic cleanup"""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except (OperationalError, DisconnectionError) as e:
            session.rollback()
            logger.error(f"Database connection error: {e}")
            self._initialize_engine()
            raise DatabaseError(f"Database connection lost: {e}") from e
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise DatabaseError(f"Database operation failed: {e}") from e
        finally:
            session.close()

    def record_liquidation(self, report: LiquidationReport):
        """Persist one liquidation attempt"""
        with self.get_session() as session:
            session.add(LiquidationAttemptModel.from_report(report))

    def health_check(self) -> bool:
        """Check database connection health"""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


# ============================================================================
# Redis Connection Manager
# ============================================================================

# Claims KEYS[1] when its stored deadline (if any) is <= now.
# ARGV: now, new deadline, ttl seconds. Returns 1 when claimed.
CLAIM_SLOT_SCRIPT = """
local deadline = redis.call('GET', KEYS[1])
if deadline and tonumber(deadline) > tonumber(ARGV[1]) then
    return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
return 1
"""


class RedisManager:
    """Redis connection manager with fallback to in-memory cache"""

    def __init__(self, config: RedisConfig):
        self.config = config
        self.client: Optional[redis.Redis] = None
        self._in_memory_slots: Dict[str, int] = {}
        self._use_fallback = False
        self._connect()

    def _connect(self):
        try:
            self.client = redis.Redis(
                host=self.config.host,
                port=self.config.port,
                password=self.config.password,
                db=self.config.db,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30
            )
            self.client.ping()
            self._use_fallback = False
            logger.info("Redis connection established")
        except RedisConnectionError as e:
            logger.warning(f"Redis connection failed, using in-memory fallback: {e}")
            self._use_fallback = True

    @property
    def using_fallback(self) -> bool:
        return self._use_fallback

    def claim_slot(self, key: str, now: int, period: int) -> bool:
        """
        Atomically claim a cooldown slot.

        Succeeds when the slot is free or its deadline is <= now, and then
        reserves it until now + period.
        """
        if not self._use_fallback:
            try:
                claimed = self.client.eval(CLAIM_SLOT_SCRIPT, 1, key, now, now + period, max(period, 1))
                return bool(claimed)
            except RedisConnectionError:
                logger.warning("Redis claim failed, switching to fallback")
                self._use_fallback = True

        deadline = self._in_memory_slots.get(key)
        if deadline is not None and deadline > now:
            return False
        self._in_memory_slots[key] = now + period
        return True

    def health_check(self) -> bool:
        """Check Redis connection health"""
        if self._use_fallback:
            return False

        try:
            self.client.ping()
            return True
        except RedisConnectionError:
            logger.warning("Redis health check failed")
            self._use_fallback = True
            return False

    def reconnect(self):
        """Attempt to reconnect to Redis"""
        if self._use_fallback:
            logger.info("Attempting to reconnect to Redis...")
            self._connect()


# ============================================================================
# Global Instances
# ============================================================================

_db_manager: Optional[DatabaseManager] = None
_redis_manager: Optional[RedisManager] = None


def init_database(config: DatabaseConfig) -> DatabaseManager:
    """Initialize database manager"""
    global _db_manager
    _db_manager = DatabaseManager(config)
    _db_manager.create_tables()
    return _db_manager


def init_redis(config: RedisConfig) -> RedisManager:
    """Initialize Redis manager"""
    global _redis_manager
    _redis_manager = RedisManager(config)
    return _redis_manager


def get_db_manager() -> Optional[DatabaseManager]:
    """Get global database manager (None when persistence is disabled)"""
    return _db_manager


def get_redis_manager() -> Optional[RedisManager]:
    """Get global Redis manager (None when Redis is disabled)"""
    return _redis_manager
