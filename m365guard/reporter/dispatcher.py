"""Fire-and-forget delivery of reports to configured sinks."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from ..host import ReportSink

logger = logging.getLogger(__name__)


class ReportDispatcher:
    """Sends reports in the background so verdicts never wait on the network."""

    def __init__(self, sinks: Optional[Iterable[ReportSink]] = None):
        self.sinks = list(sinks or [])
        self._tasks: set[asyncio.Task] = set()

    def add_sink(self, sink: ReportSink) -> None:
        self.sinks.append(sink)

    def dispatch(self, payload: dict) -> list[asyncio.Task]:
        tasks = []
        for sink in self.sinks:
            task = asyncio.create_task(self._deliver(sink, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def _deliver(self, sink: ReportSink, payload: dict) -> bool:
        try:
            delivered = await sink.send(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Report delivery to %s failed: %s", type(sink).__name__, exc)
            return False
        if not delivered:
            logger.debug("Report not delivered by %s (%s)", type(sink).__name__, payload.get("type"))
        return bool(delivered)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight deliveries. Used by tests and clean shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
        for sink in self.sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                await close()
