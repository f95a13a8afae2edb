"""
Protocol-wide circuit breaker over realized losses and liquidation velocity
"""
import asyncio
from typing import Callable, Optional

import structlog

from .config import LAMPORTS_PER_SOL, SecurityEventType, SecuritySeverity
from .error_handling import CircuitBreakerTrippedError
from .models import (
    CircuitBreakerMetrics, CircuitBreakerState, CircuitBreakerStatus, epoch_ms
)

logger = structlog.get_logger()

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class ProtocolCircuitBreaker:
    """Trips once a loss or liquidation-count threshold is reached.

    Tripping is one-way: later evaluations short-circuit until an operator
    resets it. Failing to read the metrics never trips the breaker.
    """

    def __init__(
        self,
        store,
        *,
        max_loss_24h_lamports: int = 10 * LAMPORTS_PER_SOL,
        max_loss_1h_lamports: int = 5 * LAMPORTS_PER_SOL,
        max_liquidations_1h: int = 10,
        security_monitor=None,
        clock: Callable[[], int] = epoch_ms,
    ):
        self._store = store
        self.max_loss_24h_lamports = max_loss_24h_lamports
        self.max_loss_1h_lamports = max_loss_1h_lamports
        self.max_liquidations_1h = max_liquidations_1h
        self._security = security_monitor
        self._clock = clock
        self._state = CircuitBreakerState()
        self._lock = asyncio.Lock()
        self._last_metrics: Optional[CircuitBreakerMetrics] = None
        self._last_checked_ms: Optional[int] = None

    @classmethod
    def from_settings(cls, settings, store, **kwargs) -> "ProtocolCircuitBreaker":
        return cls(
            store,
            max_loss_24h_lamports=settings.BREAKER_MAX_LOSS_24H_LAMPORTS,
            max_loss_1h_lamports=settings.BREAKER_MAX_LOSS_1H_LAMPORTS,
            max_liquidations_1h=settings.BREAKER_MAX_LIQUIDATIONS_1H,
            **kwargs,
        )

    @property
    def is_tripped(self) -> bool:
        return self._state.tripped

    @property
    def state(self) -> CircuitBreakerState:
        return self._state.model_copy()

    async def collect_metrics(self) -> CircuitBreakerMetrics:
        now = self._clock()
        outcomes = await self._store.get_liquidation_outcomes(now - DAY_MS)
        hour_start = now - HOUR_MS
        recent = [outcome for outcome in outcomes if outcome.liquidated_at_ms >= hour_start]
        return CircuitBreakerMetrics(
            loss_24h_lamports=sum(max(outcome.loss_lamports, 0) for outcome in outcomes),
            loss_1h_lamports=sum(max(outcome.loss_lamports, 0) for outcome in recent),
            liquidations_1h=len(recent),
        )

    def _breach_reason(self, metrics: CircuitBreakerMetrics) -> Optional[str]:
        if metrics.loss_24h_lamports >= self.max_loss_24h_lamports:
            return (f"24h loss {metrics.loss_24h_lamports / LAMPORTS_PER_SOL:.2f} SOL reached "
                    f"limit {self.max_loss_24h_lamports / LAMPORTS_PER_SOL:.2f} SOL")
        if metrics.loss_1h_lamports >= self.max_loss_1h_lamports:
            return (f"1h loss {metrics.loss_1h_lamports / LAMPORTS_PER_SOL:.2f} SOL reached "
                    f"limit {self.max_loss_1h_lamports / LAMPORTS_PER_SOL:.2f} SOL")
        if metrics.liquidations_1h >= self.max_liquidations_1h:
            return (f"{metrics.liquidations_1h} liquidations in the last hour reached "
                    f"limit {self.max_liquidations_1h}")
        return None

    async def evaluate(self) -> CircuitBreakerState:
        async with self._lock:
            if self._state.tripped:
                return self.state

            try:
                metrics = await self.collect_metrics()
            except Exception as e:
                logger.error("Circuit breaker metrics unavailable", error=str(e))
                if self._security is not None:
                    await self._security.log(
                        SecurityEventType.CIRCUIT_BREAKER_METRICS_FAILED,
                        SecuritySeverity.HIGH,
                        "Circuit breaker could not read liquidation metrics",
                        error=str(e),
                    )
                return self.state

            self._last_metrics = metrics
            self._last_checked_ms = self._clock()
            reason = self._breach_reason(metrics)
            if reason is not None:
                await self._trip(reason, metrics)
            return self.state

    async def _trip(self, reason: str, metrics: CircuitBreakerMetrics) -> None:
        self._state = CircuitBreakerState(tripped=True, reason=reason, tripped_at_ms=self._clock())
        logger.critical("Circuit breaker tripped", reason=reason, **metrics.model_dump())
        if self._security is not None:
            await self._security.log(
                SecurityEventType.CIRCUIT_BREAKER_TRIPPED,
                SecuritySeverity.CRITICAL,
                f"Circuit breaker tripped: {reason}",
                reason=reason,
                action="NEW LOANS BLOCKED - manual reset required",
                **metrics.model_dump(),
            )

    async def assert_ok(self) -> None:
        """Gate for new risk-taking; raises when the protocol is paused"""
        state = await self.evaluate()
        if state.tripped:
            raise CircuitBreakerTrippedError(state.reason)

    async def reset(self, operator_id: str) -> CircuitBreakerState:
        if not operator_id:
            raise ValueError("operator_id is required to reset the circuit breaker")

        async with self._lock:
            previous = self._state
            self._state = CircuitBreakerState()

        logger.warning("Circuit breaker reset", operator_id=operator_id,
                       was_tripped=previous.tripped, previous_reason=previous.reason)
        if self._security is not None:
            await self._security.log(
                SecurityEventType.CIRCUIT_BREAKER_RESET,
                SecuritySeverity.HIGH if previous.tripped else SecuritySeverity.LOW,
                f"Circuit breaker reset by {operator_id}",
                operator_id=operator_id,
                was_tripped=previous.tripped,
                previous_reason=previous.reason,
                previous_tripped_at_ms=previous.tripped_at_ms,
            )
        return self.state

    def get_status(self) -> CircuitBreakerStatus:
        return CircuitBreakerStatus(
            state=self.state,
            metrics=self._last_metrics,
            last_checked_ms=self._last_checked_ms,
            thresholds={
                "max_loss_24h_lamports": self.max_loss_24h_lamports,
                "max_loss_1h_lamports": self.max_loss_1h_lamports,
                "max_liquidations_1h": self.max_liquidations_1h,
            },
        )
