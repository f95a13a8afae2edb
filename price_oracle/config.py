from pydantic_settings import BaseSettings
from typing import List, Optional, Tuple


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # MongoDB Configuration
    MONGODB_URI: str
    MONGO_DB_NAME: str = "price_oracle"

    # Redis Configuration
    ENABLE_REDIS: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"

    # Service
    ORACLE_PORT: int = 8002
    ADMIN_API_KEY: Optional[str] = None

    # Quote API (primary provider)
    QUOTE_API_BASE_URL: str = "https://api.jup.ag/price/v3"
    QUOTE_API_KEYS: str = ""  # comma separated
    QUOTE_PROXIES: str = ""  # comma separated, aligned with QUOTE_API_KEYS
    QUOTE_API_KEY: Optional[str] = None  # legacy single key
    QUOTE_BATCH_SIZE: int = 50
    QUOTE_REQUEST_TIMEOUT_SECONDS: float = 8.0
    QUOTE_ENDPOINT_RETRY_DELAY_SECONDS: float = 0.1

    # Live price stream
    ENABLE_PRICE_STREAM: bool = True
    QUOTE_STREAM_URL: str = "wss://price.jup.ag/v4/price-stream"
    STREAM_RECONNECT_BASE_SECONDS: float = 1.0
    STREAM_RECONNECT_MAX_SECONDS: float = 30.0
    STREAM_MAX_RECONNECT_ATTEMPTS: int = 10

    # Secondary providers
    LIQUIDITY_API_BASE_URL: str = "https://api.dexscreener.com/latest/dex"
    LIQUIDITY_REQUEST_TIMEOUT_SECONDS: float = 5.0
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    BONDING_CURVE_PROGRAM_ID: str = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
    BONDING_CURVE_TOKEN_DECIMALS: int = 6
    NATIVE_ASSET_ID: str = "So11111111111111111111111111111111111111112"
    NATIVE_DECIMALS: int = 9

    # Endpoint health
    ENDPOINT_FAILURE_THRESHOLD: int = 3
    ENDPOINT_FAILURE_COOLDOWN_SECONDS: int = 60
    ENDPOINT_RATE_LIMIT_COOLDOWN_SECONDS: int = 30
    ENDPOINT_AUTH_COOLDOWN_SECONDS: int = 300

    # Retry policy for single-endpoint upstreams
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 0.5
    RETRY_MAX_DELAY_SECONDS: float = 5.0

    # Price cache and validation
    PRICE_CACHE_TTL_SECONDS: float = 3.0
    PRICE_REDIS_TTL_SECONDS: int = 10
    MAX_PLAUSIBLE_PRICE_USD: float = 1_000_000.0
    EXTREME_MOVE_THRESHOLD: float = 0.5
    HISTORY_MIN_CHANGE: float = 0.001
    STALE_PRICE_SECONDS: int = 60
    PRICE_REFRESH_INTERVAL_SECONDS: int = 30

    # Circuit breaker
    BREAKER_MAX_LOSS_24H_LAMPORTS: int = 10_000_000_000  # 10 SOL
    BREAKER_MAX_LOSS_1H_LAMPORTS: int = 5_000_000_000  # 5 SOL
    BREAKER_MAX_LIQUIDATIONS_1H: int = 10
    BREAKER_CHECK_INTERVAL_SECONDS: int = 60

    # Security events and integrations
    ALERT_MIN_SEVERITY: str = "medium"
    ALERT_RATE_LIMIT_SECONDS: int = 300
    SECURITY_EVENT_BUFFER_SIZE: int = 2000
    AUDIT_SINK_URL: Optional[str] = None
    LIQUIDATOR_SERVICE_URL: Optional[str] = None
    LIQUIDATOR_SERVICE_TOKEN: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Allow extra fields in .env

    def quote_endpoint_credentials(self) -> List[Tuple[str, Optional[str]]]:
        """Return (api_key, proxy) pairs for every configured quote endpoint"""
        keys = [key.strip() for key in self.QUOTE_API_KEYS.split(",") if key.strip()]
        if not keys and self.QUOTE_API_KEY:
            keys = [self.QUOTE_API_KEY.strip()]

        proxies = [proxy.strip() or None for proxy in self.QUOTE_PROXIES.split(",")] if self.QUOTE_PROXIES else []
        return [
            (key, proxies[index] if index < len(proxies) else None)
            for index, key in enumerate(keys)
        ]


# Global settings instance
settings = Settings()


# MongoDB Collection Names
class Collections:
    LOANS = "loans"
    TOKENS = "tokens"
    PRICE_HISTORY = "price_history"
    LIQUIDATION_RESULTS = "liquidation_results"
    SECURITY_EVENTS = "security_events"


# Security event severity levels
class SecuritySeverity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = {
    SecuritySeverity.LOW: 1,
    SecuritySeverity.MEDIUM: 2,
    SecuritySeverity.HIGH: 3,
    SecuritySeverity.CRITICAL: 4,
}


# Security event types
class SecurityEventType:
    PRICE_API_RATE_LIMITED = "price_api_rate_limited"
    QUOTE_API_AUTH_FAILURE = "quote_api_auth_failure"
    QUOTE_ENDPOINTS_RESET = "quote_endpoints_reset"
    PRICE_PROVIDER_ERROR = "price_provider_error"
    PRICE_SOURCE_FAILOVER = "price_source_failover"
    PRICE_UNAVAILABLE = "price_unavailable"
    PRICE_INVALID_DATA = "price_invalid_data"
    PRICE_EXTREME_MOVEMENT = "price_extreme_movement"
    PRICE_STALE_DATA = "price_stale_data"
    PRICE_STREAM_CONNECTED = "price_stream_connected"
    PRICE_STREAM_DISCONNECTED = "price_stream_disconnected"
    PRICE_STREAM_ERROR = "price_stream_error"
    PRICE_STREAM_GAVE_UP = "price_stream_gave_up"
    PRICE_LIQUIDATION_CHECK_FAILED = "price_liquidation_check_failed"
    LIQUIDATION_TRIGGERED = "liquidation_triggered"
    LIQUIDATION_FAILED = "liquidation_failed"
    LIQUIDATION_SKIPPED = "liquidation_skipped"
    LIQUIDATION_EXECUTOR_MISSING = "liquidation_executor_missing"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
    CIRCUIT_BREAKER_RESET = "circuit_breaker_reset"
    CIRCUIT_BREAKER_METRICS_FAILED = "circuit_breaker_metrics_failed"
    BACKGROUND_TASKS_STARTED = "background_tasks_started"
    UNHANDLED_EXCEPTION = "unhandled_exception"


# Price sources
class PriceSource:
    QUOTE_API = "quote_api"
    BONDING_CURVE = "bonding_curve"
    LIQUIDITY_AGGREGATOR = "liquidity_aggregator"
    PRICE_STREAM = "price_stream"


# Loan status values in the loans collection
class LoanStatus:
    ACTIVE = "active"
    LIQUIDATED = "liquidated"


LAMPORTS_PER_SOL = 1_000_000_000
