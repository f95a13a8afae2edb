import json
from unittest.mock import AsyncMock

import httpx
import pytest

from price_oracle.config import SecurityEventType, SecuritySeverity
from price_oracle.security import AuditForwarder, SecurityMonitor, verify_admin_key


class RecordingSink:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.payloads = []

    def __call__(self, request):
        self.payloads.append(json.loads(request.read()))
        return httpx.Response(self.status_code, json={"ok": True})


class TestSecurityMonitor:

    @pytest.mark.asyncio
    async def test_persists_medium_and_above(self, store, clock):
        monitor = SecurityMonitor(store, clock=clock)

        monitor.emit(SecurityEventType.PRICE_STREAM_CONNECTED, SecuritySeverity.LOW, "connected")
        monitor.emit(SecurityEventType.PRICE_INVALID_DATA, SecuritySeverity.MEDIUM, "bad price", asset_id="x")
        await monitor.log(SecurityEventType.CIRCUIT_BREAKER_TRIPPED, SecuritySeverity.CRITICAL, "tripped")
        await monitor.drain()

        assert sorted(event.event_type for event in store.events) == sorted([
            SecurityEventType.PRICE_INVALID_DATA, SecurityEventType.CIRCUIT_BREAKER_TRIPPED,
        ])
        assert len(monitor.recent_events()) == 3
        assert store.events[0].timestamp_ms == clock()

    def test_emit_without_loop_keeps_event_in_memory(self, store):
        monitor = SecurityMonitor(store)

        event = monitor.emit(SecurityEventType.PRICE_UNAVAILABLE, SecuritySeverity.HIGH, "no price")

        assert monitor.recent_events()[0] == event
        assert store.events == []

    def test_recent_events_filters_newest_first(self):
        monitor = SecurityMonitor()
        monitor.emit("a", SecuritySeverity.LOW, "first")
        monitor.emit("b", SecuritySeverity.HIGH, "second")
        monitor.emit("a", SecuritySeverity.CRITICAL, "third")

        assert [event.message for event in monitor.recent_events()] == ["third", "second", "first"]
        assert [event.message for event in monitor.recent_events(min_severity="high")] == ["third", "second"]
        assert [event.message for event in monitor.recent_events(event_type="a", limit=1)] == ["third"]

    def test_buffer_is_bounded(self):
        monitor = SecurityMonitor(max_events=5)
        for index in range(8):
            monitor.emit("event", SecuritySeverity.LOW, f"event {index}")

        events = monitor.recent_events(limit=100)
        assert len(events) == 5
        assert events[-1].message == "event 3"

    @pytest.mark.asyncio
    async def test_persistence_failure_is_not_raised(self, store):
        store.append_security_event = AsyncMock(side_effect=RuntimeError("mongo down"))
        monitor = SecurityMonitor(store)

        event = await monitor.log(SecurityEventType.LIQUIDATION_FAILED, SecuritySeverity.HIGH, "failed")

        assert event.event_type == SecurityEventType.LIQUIDATION_FAILED
        assert monitor.get_stats()["by_severity"] == {"high": 1}


class TestAuditForwarder:

    @pytest.mark.asyncio
    async def test_forwards_to_sink(self, clock):
        sink = RecordingSink()
        forwarder = AuditForwarder("https://audit.test/", clock=clock, transport=httpx.MockTransport(sink))
        monitor = SecurityMonitor(forwarder=forwarder, clock=clock)

        await monitor.log(SecurityEventType.PRICE_UNAVAILABLE, SecuritySeverity.HIGH, "no price", assets=["x"])
        await monitor.aclose()

        assert sink.payloads[0]["event_type"] == SecurityEventType.PRICE_UNAVAILABLE
        assert sink.payloads[0]["level"] == "high"
        assert sink.payloads[0]["service"] == "price_oracle"
        assert sink.payloads[0]["data"] == {"assets": ["x"]}

    @pytest.mark.asyncio
    async def test_rate_limited_per_event_type(self, clock):
        sink = RecordingSink()
        forwarder = AuditForwarder("https://audit.test", rate_limit_ms=300_000, clock=clock,
                                   transport=httpx.MockTransport(sink))
        monitor = SecurityMonitor(forwarder=forwarder, clock=clock)

        await monitor.log(SecurityEventType.PRICE_API_RATE_LIMITED, SecuritySeverity.MEDIUM, "429")
        await monitor.log(SecurityEventType.PRICE_API_RATE_LIMITED, SecuritySeverity.MEDIUM, "429 again")
        await monitor.log(SecurityEventType.PRICE_STALE_DATA, SecuritySeverity.MEDIUM, "stale")
        clock.advance(300_000)
        await monitor.log(SecurityEventType.PRICE_API_RATE_LIMITED, SecuritySeverity.MEDIUM, "429 later")

        assert [payload["message"] for payload in sink.payloads] == ["429", "stale", "429 later"]

    @pytest.mark.asyncio
    async def test_critical_events_bypass_rate_limit(self, clock):
        sink = RecordingSink()
        forwarder = AuditForwarder("https://audit.test", clock=clock, transport=httpx.MockTransport(sink))
        monitor = SecurityMonitor(forwarder=forwarder, clock=clock)

        for _ in range(3):
            await monitor.log(SecurityEventType.LIQUIDATION_TRIGGERED, SecuritySeverity.CRITICAL, "liquidate")

        assert len(sink.payloads) == 3

    @pytest.mark.asyncio
    async def test_low_severity_not_forwarded(self, clock):
        sink = RecordingSink()
        forwarder = AuditForwarder("https://audit.test", clock=clock, transport=httpx.MockTransport(sink))
        monitor = SecurityMonitor(forwarder=forwarder, clock=clock)

        await monitor.log(SecurityEventType.PRICE_STREAM_CONNECTED, SecuritySeverity.LOW, "connected")

        assert sink.payloads == []

    @pytest.mark.asyncio
    async def test_sink_failures_are_swallowed(self, clock):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        forwarder = AuditForwarder("https://audit.test", clock=clock, transport=httpx.MockTransport(handler))
        monitor = SecurityMonitor(forwarder=forwarder, clock=clock)

        event = await monitor.log(SecurityEventType.LIQUIDATION_TRIGGERED, SecuritySeverity.CRITICAL, "liquidate")
        assert not await forwarder.forward(event)
        await forwarder.aclose()

    @pytest.mark.asyncio
    async def test_no_sink_configured(self):
        forwarder = AuditForwarder(None)
        monitor = SecurityMonitor(forwarder=forwarder)
        event = await monitor.log(SecurityEventType.PRICE_UNAVAILABLE, SecuritySeverity.HIGH, "no price")
        assert not await forwarder.forward(event)


class TestAdminKey:

    @pytest.mark.parametrize("provided,expected,result", [
        ("secret", "secret", True),
        ("Secret", "secret", False),
        (None, "secret", False),
        ("secret", None, False),
        ("", "", False),
    ])
    def test_verify_admin_key(self, provided, expected, result):
        assert verify_admin_key(provided, expected) is result
