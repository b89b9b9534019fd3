"""Report sinks that deliver protection reports over HTTP."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 60


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"  # sink disabled or missing a server URL
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"


@dataclass
class DeliveryResult:
    """Outcome of handing one report to one sink."""

    sink: str
    status: DeliveryStatus
    detail: str = ""
    http_status: Optional[int] = None
    retry_after: Optional[int] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class ReportError(Exception):
    """A report server rejected a report."""

    def __init__(self, http_status: int, detail: str, body: str = ""):
        self.http_status = http_status
        self.detail = detail
        self.body = body
        super().__init__(f"report rejected with HTTP {http_status}: {detail}")


class ReportSink(ABC):
    """Destination for protection reports."""

    name: str = "sink"

    def enabled_for_delivery(self) -> bool:
        return True

    @abstractmethod
    async def deliver(self, report: dict) -> DeliveryResult:
        ...

    async def send(self, event: dict) -> bool:
        return (await self.deliver(event)).ok

    async def close(self) -> None:
        return None


class HttpReportSink(ReportSink):
    """Sink that POSTs JSON reports; subclasses implement ``_post_report``.

    ``deliver`` turns transport failures, rejections and rate limiting into
    a ``DeliveryResult`` so a reporting problem never reaches the engine.
    """

    timeout_seconds: float = 10.0
    user_agent: str = "m365guard/1.0"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    async def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _result(self, status: DeliveryStatus, detail: str = "", **kwargs) -> DeliveryResult:
        return DeliveryResult(sink=self.name, status=status, detail=detail, **kwargs)

    async def deliver(self, report: dict) -> DeliveryResult:
        if not self.enabled_for_delivery():
            return self._result(DeliveryStatus.SKIPPED, "sink disabled or not configured")

        try:
            return await self._post_report(report)
        except httpx.TimeoutException:
            logger.warning("%s report timed out after %ss", self.name, self.timeout_seconds)
            return self._result(DeliveryStatus.FAILED, "timed out")
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            if code == 429:
                try:
                    wait = int(exc.response.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
                except ValueError:
                    wait = DEFAULT_RETRY_AFTER
                logger.warning("%s is rate limiting reports (retry in %ss)", self.name, wait)
                return self._result(
                    DeliveryStatus.RATE_LIMITED, f"retry in {wait}s", http_status=code, retry_after=wait
                )
            logger.warning("%s report failed: HTTP %s", self.name, code)
            return self._result(DeliveryStatus.FAILED, f"HTTP {code}", http_status=code)
        except ReportError as exc:
            logger.warning("%s report rejected: %s", self.name, exc)
            return self._result(DeliveryStatus.FAILED, exc.detail, http_status=exc.http_status)
        except httpx.HTTPError as exc:
            logger.warning("%s report failed: %s", self.name, exc)
            return self._result(DeliveryStatus.FAILED, f"transport error: {exc}")

    @abstractmethod
    async def _post_report(self, report: dict) -> DeliveryResult:
        ...

    async def _post(self, url: str, body: dict) -> httpx.Response:
        client = await self.client()
        return await client.post(url, json=body)
