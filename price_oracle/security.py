import asyncio
import hmac
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Set

import httpx
import structlog

from .config import SEVERITY_ORDER, SecuritySeverity
from .models import SecurityEvent, epoch_ms

logger = structlog.get_logger()

_LOG_METHODS = {
    SecuritySeverity.LOW: "info",
    SecuritySeverity.MEDIUM: "warning",
    SecuritySeverity.HIGH: "error",
    SecuritySeverity.CRITICAL: "critical",
}


def severity_rank(severity: str) -> int:
    return SEVERITY_ORDER.get(severity, 0)


def verify_admin_key(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison of an operator-supplied admin key"""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


class AuditForwarder:
    """Forwards security events to the external audit sink.

    Forwarding is rate limited per event type; CRITICAL events always go out.
    Sink failures are logged and never raised.
    """

    def __init__(self, sink_url: Optional[str], *, rate_limit_ms: int = 300_000,
                 clock: Callable[[], int] = epoch_ms,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.sink_url = sink_url.rstrip("/") if sink_url else None
        self.rate_limit_ms = rate_limit_ms
        self._clock = clock
        self._transport = transport
        self._last_sent: Dict[str, int] = {}
        self.client: Optional[httpx.AsyncClient] = None

    def _should_forward(self, event: SecurityEvent) -> bool:
        if event.severity == SecuritySeverity.CRITICAL:
            return True
        now = self._clock()
        last = self._last_sent.get(event.event_type)
        if last is not None and now - last < self.rate_limit_ms:
            return False
        self._last_sent[event.event_type] = now
        return True

    async def forward(self, event: SecurityEvent) -> bool:
        if not self.sink_url or not self._should_forward(event):
            return False
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=10.0, transport=self._transport)

        log_data = {
            "timestamp": datetime.fromtimestamp(event.timestamp_ms / 1000, tz=timezone.utc).isoformat(),
            "service": event.source,
            "event_type": event.event_type,
            "level": event.severity,
            "message": event.message,
            "data": event.details,
        }
        try:
            response = await self.client.post(f"{self.sink_url}/api/logs", json=log_data)
        except httpx.HTTPError as e:
            logger.warning("Error forwarding security event", event_type=event.event_type, error=str(e))
            return False

        if response.status_code >= 400:
            logger.warning("Audit sink rejected security event",
                           event_type=event.event_type, status_code=response.status_code)
            return False
        return True

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None


class SecurityMonitor:
    """Records security/audit events.

    Every event is kept in a bounded in-memory buffer and written to the
    application log. Events at or above ``persist_min_severity`` are appended
    to the store; events at or above ``alert_min_severity`` go to the audit
    sink.
    """

    def __init__(
        self,
        store=None,
        forwarder: Optional[AuditForwarder] = None,
        *,
        persist_min_severity: str = SecuritySeverity.MEDIUM,
        alert_min_severity: str = SecuritySeverity.MEDIUM,
        max_events: int = 2000,
        clock: Callable[[], int] = epoch_ms,
    ):
        self._store = store
        self._forwarder = forwarder
        self._persist_rank = severity_rank(persist_min_severity)
        self._alert_rank = severity_rank(alert_min_severity)
        self._clock = clock
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self._pending: Set[asyncio.Task] = set()

    def _record(self, event_type: str, severity: str, message: str, details: dict) -> SecurityEvent:
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            message=message,
            details=details,
            timestamp_ms=self._clock(),
        )
        self._events.append(event)
        log = getattr(logger, _LOG_METHODS.get(severity, "warning"))
        log("Security event", event_type=event_type, severity=severity,
            message=message, details=details)
        return event

    async def _dispatch(self, event: SecurityEvent) -> None:
        rank = severity_rank(event.severity)
        if self._store is not None and rank >= self._persist_rank:
            try:
                await self._store.append_security_event(event)
            except Exception as e:
                logger.error("Failed to persist security event",
                             event_type=event.event_type, error=str(e))
        if self._forwarder is not None and rank >= self._alert_rank:
            await self._forwarder.forward(event)

    async def log(self, event_type: str, severity: str, message: str, **details) -> SecurityEvent:
        """Record an event and wait until it is persisted and forwarded"""
        event = self._record(event_type, severity, message, details)
        await self._dispatch(event)
        return event

    def emit(self, event_type: str, severity: str, message: str, **details) -> SecurityEvent:
        """Record an event now and persist/forward it in the background"""
        event = self._record(event_type, severity, message, details)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, security event kept in memory only",
                         event_type=event_type)
            return event

        task = loop.create_task(self._dispatch(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return event

    def recent_events(self, limit: int = 100, min_severity: Optional[str] = None,
                      event_type: Optional[str] = None) -> List[SecurityEvent]:
        min_rank = severity_rank(min_severity) if min_severity else 0
        matching = [
            event for event in self._events
            if severity_rank(event.severity) >= min_rank
            and (event_type is None or event.event_type == event_type)
        ]
        return list(reversed(matching))[:limit]

    def get_stats(self) -> dict:
        by_severity = Counter(event.severity for event in self._events)
        return {
            "buffered_events": len(self._events),
            "pending_dispatch": len(self._pending),
            "by_severity": dict(by_severity),
        }

    async def drain(self) -> None:
        """Wait for background persistence/forwarding to finish"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._forwarder is not None:
            await self._forwarder.aclose()
