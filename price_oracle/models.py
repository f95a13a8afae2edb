import math
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import SecuritySeverity
from .error_handling import DataIntegrityError


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


def validate_usd_price(value: Any, max_price: float = 1_000_000.0) -> float:
    """Parse an upstream price and reject non-finite, non-positive or implausible values"""
    if value is None or isinstance(value, bool):
        raise DataIntegrityError(f"Missing or non-numeric price: {value!r}")
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise DataIntegrityError(f"Unparseable price: {value!r}") from None

    if not math.isfinite(price):
        raise DataIntegrityError(f"Non-finite price: {value!r}")
    if price <= 0:
        raise DataIntegrityError(f"Non-positive price: {price}")
    if price > max_price:
        raise DataIntegrityError(f"Implausible price: {price} > {max_price}")
    return price


# Price Models
class PriceRecord(BaseModel):
    """A single price observation. Superseded by newer records, never mutated."""
    model_config = ConfigDict(frozen=True)

    asset_id: str
    usd_price: float
    native_price: Optional[float] = None
    price_change_24h: Optional[float] = None
    liquidity_usd: Optional[float] = None
    source: str
    observed_at_ms: int = Field(default_factory=epoch_ms)
    decimals: Optional[int] = None


class PricesResponse(BaseModel):
    prices: Dict[str, PriceRecord]
    missing: List[str] = []
    timestamp_ms: int = Field(default_factory=epoch_ms)


class PriceDetailResponse(BaseModel):
    price: PriceRecord
    age_ms: int
    price_24h_ago: Optional[float] = None


class PriceHistoryResponse(BaseModel):
    asset_id: str
    interval: str
    points: List[PriceRecord]


class PriceRefreshRequest(BaseModel):
    asset_ids: Optional[List[str]] = None
    clear_cache: bool = True


# Position / liquidation Models
class OpenPosition(BaseModel):
    position_id: str
    asset_id: str
    liquidation_price: float  # native units
    entry_price: Optional[float] = None  # native units
    borrower: Optional[str] = None


class LiquidationOutcome(BaseModel):
    position_id: str
    loss_lamports: int = 0
    liquidated_at_ms: int


class LiquidationThresholdEvent(BaseModel):
    position_id: str
    asset_id: str
    native_price: float
    liquidation_price: float
    observed_at_ms: int

    @property
    def breached(self) -> bool:
        return self.native_price <= self.liquidation_price


# Circuit breaker Models
class CircuitBreakerState(BaseModel):
    tripped: bool = False
    reason: Optional[str] = None
    tripped_at_ms: Optional[int] = None


class CircuitBreakerMetrics(BaseModel):
    loss_1h_lamports: int = 0
    loss_24h_lamports: int = 0
    liquidations_1h: int = 0


class CircuitBreakerStatus(BaseModel):
    state: CircuitBreakerState
    metrics: Optional[CircuitBreakerMetrics] = None
    last_checked_ms: Optional[int] = None
    thresholds: Dict[str, int]


# Security / operational Models
class SecurityEvent(BaseModel):
    event_type: str
    severity: str = SecuritySeverity.MEDIUM
    message: str
    details: Dict[str, Any] = {}
    source: str = "price_oracle"
    timestamp_ms: int = Field(default_factory=epoch_ms)


class EndpointHealthSnapshot(BaseModel):
    id: str
    is_healthy: bool
    consecutive_failures: int
    total_requests: int
    total_failures: int
    success_rate: float
    avg_latency_ms: Optional[float] = None
    cooldown_remaining_ms: int = 0
    last_failure_at_ms: Optional[int] = None
    last_429_at_ms: Optional[int] = None
    has_proxy: bool = False
