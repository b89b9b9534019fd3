"""CIPP server reporter."""

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .base import DeliveryResult, DeliveryStatus, HttpReportSink, ReportError

logger = logging.getLogger(__name__)

CIPP_ENDPOINT = "/api/PublicExecCheck"


class CippReporter(HttpReportSink):
    """POSTs detection reports to a CIPP server's public check endpoint.

    ``enabled``, ``server_url`` and ``tenant_id`` may be changed after
    construction; a protection session updates them from per-page settings
    before each report.
    """

    name = "cipp"

    def __init__(
        self,
        server_url: str,
        tenant_id: str = "",
        enabled: bool = True,
        timeout: float = 10.0,
        engine_version: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(client=client)
        self.server_url = (server_url or "").strip().rstrip("/")
        self.tenant_id = tenant_id
        self.enabled = enabled
        self.timeout_seconds = timeout
        self.engine_version = engine_version

    @property
    def endpoint(self) -> str:
        return f"{self.server_url}{CIPP_ENDPOINT}"

    def enabled_for_delivery(self) -> bool:
        return self.enabled and bool(self.server_url)

    async def _post_report(self, report: dict) -> DeliveryResult:
        body = {"timestamp": datetime.now(timezone.utc).isoformat(), **report}
        if self.engine_version:
            body.setdefault("extensionVersion", self.engine_version)
        if self.tenant_id:
            body.setdefault("tenantId", self.tenant_id)

        logger.info("Sending %s report to %s", report.get("type"), self.endpoint)
        resp = await self._post(self.endpoint, body)
        if resp.status_code == 429:
            resp.raise_for_status()
        if resp.status_code >= 400:
            raise ReportError(resp.status_code, resp.reason_phrase or "rejected", resp.text[:500])

        logger.info("CIPP accepted %s report", report.get("type"))
        return self._result(DeliveryStatus.DELIVERED, http_status=resp.status_code)
