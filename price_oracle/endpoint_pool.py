"""
Credentialed quote API endpoint pool with health tracking, rotation and cooldowns
"""
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

import structlog

from .config import SecurityEventType, SecuritySeverity
from .error_handling import ConfigurationError, FailureKind
from .models import EndpointHealthSnapshot, epoch_ms

logger = structlog.get_logger()

LATENCY_EMA_WEIGHT = 0.9


@dataclass
class EndpointHealth:
    consecutive_failures: int = 0
    last_failure_at: Optional[int] = None
    last_429_at: Optional[int] = None
    total_requests: int = 0
    total_failures: int = 0
    avg_latency_ms: Optional[float] = None
    is_healthy: bool = True
    cooldown_until: int = 0


@dataclass
class Endpoint:
    id: str
    api_key: str
    proxy: Optional[str] = None
    health: EndpointHealth = field(default_factory=EndpointHealth)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def masked_key(self) -> str:
        if len(self.api_key) <= 8:
            return "****"
        return f"{self.api_key[:4]}...{self.api_key[-4:]}"


class EndpointPool:
    """Round-robin pool of quote API endpoints.

    Health fields of an endpoint are only mutated while holding that endpoint's
    lock. The rotation index has its own lock and is always taken modulo the
    pool size.
    """

    def __init__(
        self,
        endpoints: Iterable[Endpoint],
        *,
        failure_threshold: int = 3,
        failure_cooldown_ms: int = 60_000,
        rate_limit_cooldown_ms: int = 30_000,
        auth_cooldown_ms: int = 300_000,
        clock: Callable[[], int] = epoch_ms,
        security_monitor=None,
    ):
        self._endpoints: List[Endpoint] = list(endpoints)
        self._index = 0
        self._index_lock = threading.Lock()
        self.failure_threshold = failure_threshold
        self.failure_cooldown_ms = failure_cooldown_ms
        self.rate_limit_cooldown_ms = rate_limit_cooldown_ms
        self.auth_cooldown_ms = auth_cooldown_ms
        self._clock = clock
        self._security = security_monitor

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "EndpointPool":
        credentials = settings.quote_endpoint_credentials()
        if not credentials:
            raise ConfigurationError(
                "No quote API keys configured (set QUOTE_API_KEYS or QUOTE_API_KEY)"
            )

        endpoints = [
            Endpoint(id=f"endpoint-{index}", api_key=key, proxy=proxy)
            for index, (key, proxy) in enumerate(credentials, start=1)
        ]
        logger.info(
            "Quote endpoint pool configured",
            endpoints=len(endpoints),
            with_proxy=sum(1 for endpoint in endpoints if endpoint.proxy),
        )
        return cls(
            endpoints,
            failure_threshold=settings.ENDPOINT_FAILURE_THRESHOLD,
            failure_cooldown_ms=settings.ENDPOINT_FAILURE_COOLDOWN_SECONDS * 1000,
            rate_limit_cooldown_ms=settings.ENDPOINT_RATE_LIMIT_COOLDOWN_SECONDS * 1000,
            auth_cooldown_ms=settings.ENDPOINT_AUTH_COOLDOWN_SECONDS * 1000,
            **kwargs,
        )

    def __len__(self) -> int:
        return len(self._endpoints)

    @property
    def endpoints(self) -> tuple:
        return tuple(self._endpoints)

    def get(self, endpoint_id: str) -> Optional[Endpoint]:
        for endpoint in self._endpoints:
            if endpoint.id == endpoint_id:
                return endpoint
        return None

    def _restore_if_cooled_down(self, endpoint: Endpoint, now: int) -> bool:
        """Restore health once the cooldown has elapsed; returns selectability"""
        with endpoint.lock:
            health = endpoint.health
            if not health.is_healthy and now >= health.cooldown_until:
                health.is_healthy = True
                health.consecutive_failures = 0
                health.cooldown_until = 0
                logger.info("Quote endpoint restored after cooldown", endpoint=endpoint.id)
            return health.is_healthy and now >= health.cooldown_until

    def select_endpoint(self) -> Optional[Endpoint]:
        """Next healthy endpoint in rotation, or the one whose cooldown ends first"""
        if not self._endpoints:
            return None

        now = self._clock()
        count = len(self._endpoints)
        with self._index_lock:
            start = self._index % count
            for offset in range(count):
                position = (start + offset) % count
                endpoint = self._endpoints[position]
                if self._restore_if_cooled_down(endpoint, now):
                    self._index = (position + 1) % count
                    return endpoint

        fallback = min(self._endpoints, key=lambda candidate: candidate.health.cooldown_until)
        logger.warning(
            "All quote endpoints unhealthy, using earliest cooldown expiry",
            endpoint=fallback.id,
            cooldown_remaining_ms=max(0, fallback.health.cooldown_until - now),
        )
        return fallback

    def record_success(self, endpoint: Endpoint, latency_ms: float) -> None:
        with endpoint.lock:
            health = endpoint.health
            health.total_requests += 1
            health.consecutive_failures = 0
            health.is_healthy = True
            health.cooldown_until = 0
            if health.avg_latency_ms is None:
                health.avg_latency_ms = float(latency_ms)
            else:
                health.avg_latency_ms = (
                    LATENCY_EMA_WEIGHT * health.avg_latency_ms
                    + (1 - LATENCY_EMA_WEIGHT) * latency_ms
                )

    def record_failure(self, endpoint: Endpoint, status_code: Optional[int] = None) -> FailureKind:
        """Apply the failure to the endpoint's health and return its classification"""
        now = self._clock()
        entered_cooldown = False
        with endpoint.lock:
            health = endpoint.health
            health.total_requests += 1
            health.total_failures += 1
            health.consecutive_failures += 1
            health.last_failure_at = now

            if status_code == 429:
                kind = FailureKind.RATE_LIMITED
                health.last_429_at = now
                health.is_healthy = False
                health.cooldown_until = now + self.rate_limit_cooldown_ms
            elif status_code in (401, 403):
                kind = FailureKind.UNAUTHORIZED
                health.is_healthy = False
                health.cooldown_until = now + self.auth_cooldown_ms
            else:
                kind = FailureKind.TRANSIENT
                if health.consecutive_failures >= self.failure_threshold:
                    entered_cooldown = health.is_healthy
                    health.is_healthy = False
                    health.cooldown_until = now + self.failure_cooldown_ms
            consecutive = health.consecutive_failures

        if kind is FailureKind.RATE_LIMITED:
            logger.warning("Quote endpoint rate limited", endpoint=endpoint.id,
                           cooldown_ms=self.rate_limit_cooldown_ms)
            self._emit(
                SecurityEventType.PRICE_API_RATE_LIMITED,
                SecuritySeverity.MEDIUM,
                f"Quote endpoint {endpoint.id} rate limited",
                endpoint=endpoint.id,
                cooldown_ms=self.rate_limit_cooldown_ms,
            )
        elif kind is FailureKind.UNAUTHORIZED:
            logger.error("Quote endpoint rejected credentials", endpoint=endpoint.id,
                         api_key=endpoint.masked_key, status_code=status_code)
            self._emit(
                SecurityEventType.QUOTE_API_AUTH_FAILURE,
                SecuritySeverity.HIGH,
                f"Quote endpoint {endpoint.id} rejected its API key - operator attention required",
                endpoint=endpoint.id,
                status_code=status_code,
                cooldown_ms=self.auth_cooldown_ms,
            )
        elif entered_cooldown:
            logger.warning("Quote endpoint marked unhealthy", endpoint=endpoint.id,
                           consecutive_failures=consecutive,
                           cooldown_ms=self.failure_cooldown_ms)
        return kind

    def reset_all(self) -> None:
        """Operator action: clear health state of every endpoint"""
        for endpoint in self._endpoints:
            with endpoint.lock:
                endpoint.health = EndpointHealth()
        with self._index_lock:
            self._index = 0
        logger.info("Quote endpoint health reset", endpoints=len(self._endpoints))
        self._emit(
            SecurityEventType.QUOTE_ENDPOINTS_RESET,
            SecuritySeverity.LOW,
            "Quote endpoint health reset by operator",
            endpoints=len(self._endpoints),
        )

    def healthy_count(self) -> int:
        now = self._clock()
        return sum(
            1 for endpoint in self._endpoints
            if endpoint.health.is_healthy and now >= endpoint.health.cooldown_until
        )

    def get_health_status(self) -> List[EndpointHealthSnapshot]:
        now = self._clock()
        snapshots = []
        for endpoint in self._endpoints:
            with endpoint.lock:
                health = endpoint.health
                successes = health.total_requests - health.total_failures
                snapshots.append(EndpointHealthSnapshot(
                    id=endpoint.id,
                    is_healthy=health.is_healthy and now >= health.cooldown_until,
                    consecutive_failures=health.consecutive_failures,
                    total_requests=health.total_requests,
                    total_failures=health.total_failures,
                    success_rate=(successes / health.total_requests) if health.total_requests else 1.0,
                    avg_latency_ms=round(health.avg_latency_ms, 2) if health.avg_latency_ms is not None else None,
                    cooldown_remaining_ms=max(0, health.cooldown_until - now),
                    last_failure_at_ms=health.last_failure_at,
                    last_429_at_ms=health.last_429_at,
                    has_proxy=endpoint.proxy is not None,
                ))
        return snapshots

    def _emit(self, event_type: str, severity: str, message: str, **details) -> None:
        if self._security is not None:
            self._security.emit(event_type, severity, message, **details)
