from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
import os
from dotenv import load_dotenv
from sqlalchemy import AsyncAdaptedQueuePool, StaticPool

from .exceptions import ConfigurationError
from .enums import BackfillMode, CheckpointPolicy, Commitment

SPL_TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

# PostgreSQL caps bind parameters at 65535 per statement; 9 columns per transfer row
TRANSFER_COLUMNS = 9
MAX_ROWS_PER_INSERT = 65535 // TRANSFER_COLUMNS


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('1', 'true', 'yes')


@dataclass
class DatabaseConfig:
    """Database configuration settings"""
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    database: str = "token_indexer"
    schema: str = "public"
    pool_size: int = 20
    max_overflow: int = 0
    pool_timeout: int = 5
    pool_recycle: int = 1800
    echo: bool = False
    auto_create: bool = True
    max_batch_rows: int = 5000
    dialect: str = "postgresql"
    driver: str = "asyncpg"

    def __post_init__(self) -> None:
        """Validate database configuration"""
        if self.dialect == "postgresql" and not self.host:
            raise ConfigurationError("Database host must be specified")
        if self.pool_size <= 0:
            raise ConfigurationError("Pool size must be positive")
        if not 0 < self.max_batch_rows <= MAX_ROWS_PER_INSERT:
            raise ConfigurationError(
                f"Max batch rows must be between 1 and {MAX_ROWS_PER_INSERT}"
            )

    @property
    def is_sqlite(self) -> bool:
        return self.dialect == "sqlite"

    @property
    def url(self) -> str:
        """Get database URL"""
        if self.is_sqlite:
            return f"{self.dialect}+{self.driver}:///{self.database}"
        return f"{self.dialect}+{self.driver}://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def get_engine_options(self) -> Dict[str, Any]:
        """Get SQLAlchemy engine options"""
        if self.is_sqlite:
            # One shared connection so an in-memory database survives across sessions
            return {
                'poolclass': StaticPool,
                'connect_args': {'check_same_thread': False},
                'echo': self.echo
            }
        return {
            'poolclass': AsyncAdaptedQueuePool,
            'pool_pre_ping': True,
            'pool_size': self.pool_size,
            'max_overflow': self.max_overflow,
            'pool_timeout': self.pool_timeout,
            'pool_recycle': self.pool_recycle,
            'echo': self.echo
        }

@dataclass
class HeliusConfig:
    """Helius history API and RPC configuration"""
    api_key: str = ""
    history_url: str = "https://api-mainnet.helius-rpc.com/v0/addresses"
    rpc_url: str = "https://mainnet.helius-rpc.com"
    transaction_type: str = "TRANSFER"
    rate_limit: int = 10        # requests per window
    rate_limit_window: int = 1  # seconds
    request_timeout: int = 30

    def __post_init__(self) -> None:
        """Validate Helius configuration"""
        if self.rate_limit <= 0:
            raise ConfigurationError("Rate limit must be positive")
        if self.rate_limit_window <= 0:
            raise ConfigurationError("Rate limit window must be positive")

@dataclass
class BirdeyeConfig:
    """Birdeye token discovery configuration"""
    api_key: Optional[str] = None
    url: str = "https://public-api.birdeye.so/defi/v3/token/list"
    chain: str = "solana"
    list_limit: int = 100

    def __post_init__(self) -> None:
        """Validate Birdeye configuration"""
        if self.list_limit <= 0 or self.list_limit > 100:
            raise ConfigurationError("Token list limit must be between 1 and 100")

@dataclass
class StreamConfig:
    """Push feed (transaction stream) configuration"""
    endpoint: str = "wss://atlas-mainnet.helius-rpc.com"
    api_key: str = ""
    account_include: List[str] = field(default_factory=lambda: [SPL_TOKEN_PROGRAM_ID])
    commitment: Commitment = Commitment.CONFIRMED
    max_reconnect_attempts: int = 10
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    subscribe_timeout: float = 20.0
    ping_interval: int = 15

    def __post_init__(self) -> None:
        """Validate stream configuration"""
        if not self.endpoint:
            raise ConfigurationError("Stream endpoint must be specified")
        if not self.account_include:
            raise ConfigurationError("Stream account filter must not be empty")
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError("Max reconnect attempts cannot be negative")

@dataclass
class BackfillConfig:
    """Historical backfill configuration"""
    mode: BackfillMode = BackfillMode.AUTO
    lookback_days: int = 30
    page_size: int = 100
    batch_size: int = 500
    page_delay: float = 0.1     # seconds between page fetches
    concurrency: int = 6
    max_retries: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    def __post_init__(self) -> None:
        """Validate backfill configuration"""
        if self.lookback_days <= 0:
            raise ConfigurationError("Lookback window must be positive")
        if self.page_size <= 0 or self.page_size > 100:
            raise ConfigurationError("Page size must be between 1 and 100")
        if self.batch_size <= 0:
            raise ConfigurationError("Batch size must be positive")
        if self.concurrency <= 0:
            raise ConfigurationError("Concurrency must be positive")
        if self.max_retries <= 0:
            raise ConfigurationError("Max retries must be positive")
        if self.page_delay < 0:
            raise ConfigurationError("Page delay cannot be negative")

@dataclass
class LiveConfig:
    """Live ingestion buffer configuration"""
    batch_size: int = 200
    flush_interval: float = 0.5  # seconds
    checkpoint_interval: int = 100  # slots
    checkpoint_policy: CheckpointPolicy = CheckpointPolicy.ACCEPTED

    def __post_init__(self) -> None:
        """Validate live ingestion configuration"""
        if self.batch_size <= 0:
            raise ConfigurationError("Batch size must be positive")
        if self.flush_interval <= 0:
            raise ConfigurationError("Flush interval must be positive")
        if self.checkpoint_interval <= 0:
            raise ConfigurationError("Checkpoint interval must be positive")

@dataclass
class UniverseConfig:
    """Token universe refresh configuration"""
    refresh_interval: float = 6 * 60 * 60  # seconds
    retry_interval: float = 60
    top_n: int = 50
    initial_attempts: int = 3
    initial_retry_delay: float = 1.0  # seconds, doubled per attempt

    def __post_init__(self) -> None:
        """Validate token universe configuration"""
        if self.refresh_interval <= 0 or self.retry_interval <= 0:
            raise ConfigurationError("Refresh intervals must be positive")
        if self.top_n <= 0:
            raise ConfigurationError("Universe size must be positive")
        if self.initial_attempts <= 0:
            raise ConfigurationError("Initial load attempts must be positive")

@dataclass
class LogConfig:
    """Logging configuration"""
    level: str = "INFO"
    log_dir: str = "logs"
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    def __post_init__(self) -> None:
        """Validate logging configuration"""
        if self.max_size <= 0:
            raise ConfigurationError("Log file size must be positive")
        if self.backup_count < 0:
            raise ConfigurationError("Log backup count cannot be negative")

@dataclass
class APIConfig:
    """Status API configuration"""
    host: str = "0.0.0.0"
    port: int = 8001

class Config:
    """Application configuration"""

    def __init__(self):
        # Load environment variables
        load_dotenv()

        # Initialize components
        self.database = self._init_database_config()
        self.helius = self._init_helius_config()
        self.birdeye = self._init_birdeye_config()
        self.stream = self._init_stream_config()
        self.backfill = self._init_backfill_config()
        self.live = self._init_live_config()
        self.universe = self._init_universe_config()
        self.logging = self._init_log_config()
        self.api = self._init_api_config()

        self._validate_limits()

    def _validate_limits(self) -> None:
        """Check settings that depend on each other"""
        if self.backfill.batch_size > self.database.max_batch_rows:
            raise ConfigurationError(
                f"BACKFILL_BATCH_SIZE ({self.backfill.batch_size}) exceeds "
                f"DB_MAX_BATCH_ROWS ({self.database.max_batch_rows})"
            )

    def _init_database_config(self) -> DatabaseConfig:
        """Initialize database configuration"""
        try:
            return DatabaseConfig(
                host=os.getenv('DB_HOST', 'localhost'),
                port=int(os.getenv('DB_PORT', '5432')),
                user=os.getenv('DB_USER', 'postgres'),
                password=os.getenv('DB_PASSWORD', 'postgres'),
                database=os.getenv('DB_NAME', 'token_indexer'),
                schema=os.getenv('DB_SCHEMA', 'public'),
                pool_size=int(os.getenv('DB_POOL_SIZE', '20')),
                max_overflow=int(os.getenv('DB_MAX_OVERFLOW', '0')),
                pool_timeout=int(os.getenv('DB_POOL_TIMEOUT', '5')),
                pool_recycle=int(os.getenv('DB_POOL_RECYCLE', '1800')),
                echo=_env_bool('DB_ECHO', 'false'),
                auto_create=_env_bool('DB_AUTO_CREATE', 'true'),
                max_batch_rows=int(os.getenv('DB_MAX_BATCH_ROWS', '5000'))
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Invalid database configuration: {e}")

    def _init_helius_config(self) -> HeliusConfig:
        """Initialize Helius configuration"""
        api_key = os.getenv('HELIUS_API_KEY')
        if not api_key:
            raise ConfigurationError("HELIUS_API_KEY must be set")
        try:
            return HeliusConfig(
                api_key=api_key,
                history_url=os.getenv('HELIUS_HISTORY_URL', HeliusConfig.history_url),
                rpc_url=os.getenv('HELIUS_RPC_URL', HeliusConfig.rpc_url),
                rate_limit=int(os.getenv('HELIUS_RATE_LIMIT', '10')),
                rate_limit_window=int(os.getenv('HELIUS_RATE_LIMIT_WINDOW', '1')),
                request_timeout=int(os.getenv('HELIUS_REQUEST_TIMEOUT', '30'))
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Invalid Helius configuration: {e}")

    def _init_birdeye_config(self) -> BirdeyeConfig:
        """Initialize Birdeye configuration"""
        try:
            return BirdeyeConfig(
                api_key=os.getenv('BIRDEYE_API_KEY'),
                url=os.getenv('BIRDEYE_URL', BirdeyeConfig.url),
                chain=os.getenv('BIRDEYE_CHAIN', 'solana'),
                list_limit=int(os.getenv('BIRDEYE_LIST_LIMIT', '100'))
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Invalid Birdeye configuration: {e}")

    def _init_stream_config(self) -> StreamConfig:
        """Initialize push feed configuration"""
        try:
            accounts = os.getenv('STREAM_ACCOUNT_INCLUDE', SPL_TOKEN_PROGRAM_ID)
            return StreamConfig(
                endpoint=os.getenv('STREAM_ENDPOINT', StreamConfig.endpoint),
                api_key=os.getenv('STREAM_API_KEY', os.getenv('HELIUS_API_KEY', '')),
                account_include=[a.strip() for a in accounts.split(',') if a.strip()],
                commitment=Commitment(os.getenv('STREAM_COMMITMENT', 'confirmed')),
                max_reconnect_attempts=int(os.getenv('STREAM_MAX_RECONNECT_ATTEMPTS', '10'))
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Invalid stream configuration: {e}")

    def _init_backfill_config(self) -> BackfillConfig:
        """Initialize backfill configuration"""
        try:
            return BackfillConfig(
                mode=BackfillMode(os.getenv('BACKFILL_MODE', 'auto')),
                lookback_days=int(os.getenv('BACKFILL_LOOKBACK_DAYS', '30')),
                page_size=int(os.getenv('BACKFILL_PAGE_SIZE', '100')),
                batch_size=int(os.getenv('BACKFILL_BATCH_SIZE', '500')),
                page_delay=float(os.getenv('BACKFILL_PAGE_DELAY', '0.1')),
                concurrency=int(os.getenv('BACKFILL_CONCURRENCY', '6')),
                max_retries=int(os.getenv('BACKFILL_MAX_RETRIES', '5')),
                retry_base_delay=float(os.getenv('BACKFILL_RETRY_BASE_DELAY', '1.0')),
                retry_max_delay=float(os.getenv('BACKFILL_RETRY_MAX_DELAY', '30.0'))
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Invalid backfill configuration: {e}")

    def _init_live_config(self) -> LiveConfig:
        """Initialize live ingestion configuration"""
        try:
            return LiveConfig(
                batch_size=int(os.getenv('LIVE_BATCH_SIZE', '200')),
                flush_interval=float(os.getenv('LIVE_FLUSH_INTERVAL', '0.5')),
                checkpoint_interval=int(os.getenv('CHECKPOINT_INTERVAL', '100')),
                checkpoint_policy=CheckpointPolicy(os.getenv('CHECKPOINT_POLICY', 'accepted'))
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Invalid live ingestion configuration: {e}")

    def _init_universe_config(self) -> UniverseConfig:
        """Initialize token universe configuration"""
        try:
            return UniverseConfig(
                refresh_interval=int(os.getenv('UNIVERSE_REFRESH_INTERVAL', str(6 * 60 * 60))),
                retry_interval=int(os.getenv('UNIVERSE_RETRY_INTERVAL', '60')),
                top_n=int(os.getenv('UNIVERSE_TOP_N', '50'))
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Invalid token universe configuration: {e}")

    def _init_log_config(self) -> LogConfig:
        """Initialize logging configuration"""
        try:
            return LogConfig(
                level=os.getenv('LOG_LEVEL', 'INFO').upper(),
                log_dir=os.getenv('LOG_DIR', 'logs'),
                max_size=int(os.getenv('LOG_MAX_SIZE', str(10 * 1024 * 1024))),
                backup_count=int(os.getenv('LOG_BACKUP_COUNT', '5'))
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Invalid logging configuration: {e}")

    def _init_api_config(self) -> APIConfig:
        """Initialize status API configuration"""
        try:
            return APIConfig(
                host=os.getenv('API_HOST', '0.0.0.0'),
                port=int(os.getenv('API_PORT', '8001'))
            )
        except Exception as e:
            raise ConfigurationError(f"Invalid API configuration: {e}")
