"""Tests for CIPP reporting and the report dispatcher."""

import json

import httpx
import pytest

from m365guard.reporter.base import DeliveryStatus
from m365guard.reporter.cipp import CippReporter
from m365guard.reporter.dispatcher import ReportDispatcher

REPORT = {"type": "phishing_blocked", "url": "https[:]//evil.example/login", "severity": "critical"}


def _reporter(handler, **kwargs) -> CippReporter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("tenant_id", "contoso.onmicrosoft.com")
    return CippReporter("https://cipp.example/", client=client, engine_version="1.0.0", **kwargs)


class TestCippReporter:
    @pytest.mark.asyncio
    async def test_submits_report(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        reporter = _reporter(handler)
        result = await reporter.deliver(REPORT)
        await reporter.close()

        assert result.status == DeliveryStatus.DELIVERED
        assert result.ok
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/PublicExecCheck"
        body = json.loads(seen[0].content)
        assert body["type"] == "phishing_blocked"
        assert body["tenantId"] == "contoso.onmicrosoft.com"
        assert body["extensionVersion"] == "1.0.0"
        assert body["timestamp"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("server_url, enabled", [("", True), ("https://cipp.example", False)])
    async def test_skipped_when_not_configured(self, server_url, enabled):
        reporter = CippReporter(server_url, enabled=enabled)
        result = await reporter.deliver(REPORT)
        assert result.status == DeliveryStatus.SKIPPED
        assert not await reporter.send(REPORT)

    @pytest.mark.asyncio
    async def test_server_error(self):
        reporter = _reporter(lambda request: httpx.Response(500, text="boom"))
        result = await reporter.deliver(REPORT)
        await reporter.close()
        assert result.status == DeliveryStatus.FAILED
        assert result.http_status == 500

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        reporter = _reporter(lambda request: httpx.Response(429, headers={"Retry-After": "30"}))
        result = await reporter.deliver(REPORT)
        await reporter.close()
        assert result.status == DeliveryStatus.RATE_LIMITED
        assert result.retry_after == 30

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        reporter = _reporter(handler)
        result = await reporter.deliver(REPORT)
        await reporter.close()
        assert result.status == DeliveryStatus.FAILED
        assert "transport error" in result.detail


class ExplodingSink:
    async def send(self, event):
        raise RuntimeError("sink crashed")


class RecordingSink:
    def __init__(self):
        self.events = []
        self.closed = False

    async def send(self, event):
        self.events.append(event)
        return True

    async def close(self):
        self.closed = True


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_failing_sink_does_not_affect_others(self, caplog):
        good = RecordingSink()
        dispatcher = ReportDispatcher([ExplodingSink(), good])
        tasks = dispatcher.dispatch(REPORT)
        assert len(tasks) == 2
        await dispatcher.drain()
        assert good.events == [REPORT]
        assert dispatcher.pending == 0
        assert "sink crashed" in caplog.text

    @pytest.mark.asyncio
    async def test_close_closes_sinks(self):
        sink = RecordingSink()
        dispatcher = ReportDispatcher()
        dispatcher.add_sink(sink)
        dispatcher.dispatch(REPORT)
        await dispatcher.close()
        assert sink.closed
        assert dispatcher.pending == 0
