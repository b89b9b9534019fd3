"""Change-triggered re-evaluation.

The host reports DOM changes through ``on_content_changed``. Qualifying
changes schedule a debounced re-run of the full pipeline, bounded by a
re-run count, a cooldown between runs and a wall-clock ceiling. A periodic
check covers content that appears without a change notification.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ..config import Config
from ..constants import M365_CONTENT_MARKERS, RERUN_TRIGGER_TAGS
from .detector_models import DetectionVerdict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentChange:
    """Summary of one batch of DOM mutations."""

    added_tags: tuple[str, ...] = ()
    added_text: str = ""

    @classmethod
    def of(cls, tags: Iterable[str] = (), text: str = "") -> "ContentChange":
        return cls(tuple(t.lower() for t in tags if t), text or "")

    def qualifies(self) -> bool:
        if any(tag.lower() in RERUN_TRIGGER_TAGS for tag in self.added_tags):
            return True
        return any(marker in self.added_text for marker in M365_CONTENT_MARKERS)


class ReevaluationController:
    def __init__(
        self,
        session,
        *,
        debounce_seconds: float = 0.5,
        cooldown_seconds: float = 1.0,
        max_reruns: int = 10,
        periodic_seconds: float = 5.0,
        ceiling_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.debounce_seconds = debounce_seconds
        self.cooldown_seconds = cooldown_seconds
        self.max_reruns = max_reruns
        self.periodic_seconds = periodic_seconds
        self.ceiling_seconds = ceiling_seconds
        self._clock = clock

        self.rerun_count = 0
        self.stopped = False
        self.stop_reason: Optional[str] = None
        self._started_at: Optional[float] = None
        self._last_run_at: Optional[float] = None
        self._in_flight = False
        self._rerun_requested = False
        self._pending: Optional[asyncio.Task] = None
        self._running: Optional[asyncio.Task] = None
        self._periodic: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, session, config: Config) -> "ReevaluationController":
        return cls(
            session,
            debounce_seconds=config.monitor_debounce_seconds,
            cooldown_seconds=config.monitor_cooldown_seconds,
            max_reruns=config.monitor_max_reruns,
            periodic_seconds=config.monitor_periodic_seconds,
            ceiling_seconds=config.monitor_ceiling_seconds,
        )

    @property
    def pending(self) -> bool:
        """True while a debounce timer is waiting to start a pass."""
        return self._pending is not None and not self._pending.done()

    def start(self) -> bool:
        """Begin monitoring after the initial pass, if the session wants it."""
        if self.stopped or self._started_at is not None:
            return False
        if not self.session.monitoring:
            self.stop("terminal verdict")
            return False
        self._started_at = self._clock()
        if self.periodic_seconds > 0:
            self._periodic = asyncio.create_task(self._periodic_loop())
        logger.debug("Monitoring started for %s", self._url())
        return True

    def _url(self) -> str:
        snapshot = getattr(self.session, "snapshot", None)
        return snapshot.url if snapshot is not None else ""

    def _expired(self) -> bool:
        if self._started_at is None:
            return False
        return self._clock() - self._started_at >= self.ceiling_seconds

    def _check_stop(self) -> bool:
        if self.stopped:
            return True
        if self._expired():
            self.stop("ceiling reached")
        elif self.session.is_blocked:
            self.stop("page blocked")
        elif self.rerun_count >= self.max_reruns:
            self.stop("max re-runs reached")
        return self.stopped

    def on_content_changed(self, change: ContentChange) -> bool:
        """Schedule a debounced re-run. Returns True when one was scheduled."""
        if self._started_at is None or not change.qualifies():
            return False
        if self._check_stop():
            return False
        if self.session.banner_shown:
            logger.debug("Re-run suppressed while warning banner is shown")
            return False

        if self._in_flight:
            # A running pass is never cancelled; run once more after it.
            self._rerun_requested = True
            return True
        if self.pending:
            self._pending.cancel()
        self._pending = asyncio.create_task(self._debounced(self.debounce_seconds))
        return True

    async def _debounced(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._running = asyncio.create_task(self._rerun("content change"))

    def _schedule_requested(self) -> None:
        if not self._rerun_requested or self.stopped or self.pending:
            return
        self._rerun_requested = False
        if self.session.banner_shown:
            return
        # Wait out the cooldown so the follow-up pass is not skipped.
        delay = max(self.debounce_seconds, self.cooldown_seconds)
        self._pending = asyncio.create_task(self._debounced(delay))

    async def _periodic_loop(self) -> None:
        while not self.stopped:
            remaining = self.ceiling_seconds - (self._clock() - self._started_at)
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.periodic_seconds, remaining))
            if self._check_stop():
                return
            if not self.session.banner_shown:
                await self._rerun("periodic")
        self._check_stop()

    async def _rerun(self, reason: str) -> Optional[DetectionVerdict]:
        if self._check_stop():
            return None
        if self._in_flight or self.session.in_flight:
            self._rerun_requested = True
            if not self._in_flight:
                self._schedule_requested()
            return None
        now = self._clock()
        if self._last_run_at is not None and now - self._last_run_at < self.cooldown_seconds:
            logger.debug("Re-run (%s) skipped: cooldown", reason)
            return None

        self._in_flight = True
        self._last_run_at = now
        self.rerun_count += 1
        try:
            verdict = await self.session.run(reason)
        except Exception as exc:
            logger.error("Re-evaluation (%s) failed: %s", reason, exc)
            verdict = None
        finally:
            self._in_flight = False

        if self.session.is_blocked:
            self.stop("page blocked")
        elif verdict is not None and not self.session.monitoring:
            self.stop("terminal verdict")
        else:
            self._schedule_requested()
        return verdict

    def stop(self, reason: str = "stopped") -> None:
        """Cancel pending timers. A pass already running is left to finish.

        Safe to call more than once.
        """
        if self.stopped:
            return
        self.stopped = True
        self.stop_reason = reason
        current = asyncio.current_task() if _loop_running() else None
        for task in (self._pending, self._periodic):
            if task is not None and task is not current and not task.done():
                task.cancel()
        logger.debug("Monitoring stopped for %s: %s", self._url(), reason)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
