"""Per-page protection session.

A session owns everything that is scoped to one page load: the current
verdict and action, the scan counter, whether a warning banner is showing,
and the page's protection event log. It runs one evaluation pass at a time
and is the only writer of the current verdict.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Optional, Union

from ..config import Config, ProtectionSettings
from ..constants import Verdict
from ..errors import RuleLoadError
from ..host import (
    FileSettingsStore,
    LoggingRenderer,
    MemorySettingsStore,
    SettingsStore,
    VerdictRenderer,
)
from ..reporter.cipp import CippReporter
from ..reporter.dispatcher import ReportDispatcher
from ..reporter.events import ProtectionEventLog, build_protection_event, build_report
from .actions import ActionPolicy, ProtectiveAction
from .detector_models import DetectionVerdict
from .engine import DetectionEngine
from .snapshot import PageSnapshot

logger = logging.getLogger(__name__)

SETTINGS_KEY = "config"

SnapshotSource = Union[PageSnapshot, Callable[[], Union[PageSnapshot, Awaitable[PageSnapshot]]]]

# Used to stop a dynamic-script finding from replacing a stronger verdict.
_VERDICT_RANK = {
    Verdict.SAFE: 0,
    Verdict.TRUSTED: 0,
    Verdict.SUSPICIOUS: 1,
    Verdict.ROGUE_APP: 2,
    Verdict.BLOCKED: 3,
}


class ProtectionSession:
    """Runs the detection pipeline for one page and applies its actions."""

    def __init__(
        self,
        engine: DetectionEngine,
        source: SnapshotSource,
        *,
        settings_store: Optional[SettingsStore] = None,
        renderer: Optional[VerdictRenderer] = None,
        dispatcher: Optional[ReportDispatcher] = None,
        policy: Optional[ActionPolicy] = None,
        event_log: Optional[ProtectionEventLog] = None,
        defaults: Optional[ProtectionSettings] = None,
        settings_timeout: float = 2.0,
        engine_version: str = "",
    ):
        self.engine = engine
        self.source = source
        self.settings_store = settings_store if settings_store is not None else MemorySettingsStore()
        self.renderer = renderer if renderer is not None else LoggingRenderer()
        self.dispatcher = dispatcher if dispatcher is not None else ReportDispatcher()
        self.policy = policy or ActionPolicy()
        self.event_log = event_log or ProtectionEventLog()
        self.defaults = defaults or ProtectionSettings()
        self.settings_timeout = settings_timeout
        self.engine_version = engine_version

        self.verdict: Optional[DetectionVerdict] = None
        self.action: Optional[ProtectiveAction] = None
        self.settings: ProtectionSettings = self.defaults
        self.snapshot: Optional[PageSnapshot] = None
        self.scan_count = 0
        self.last_scan_at: Optional[float] = None
        self.banner_shown = False
        self.fallback_shown = False
        self.closed = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: Config,
        source: SnapshotSource,
        engine: Optional[DetectionEngine] = None,
        **kwargs,
    ) -> "ProtectionSession":
        from .. import __version__

        dispatcher = kwargs.pop("dispatcher", None)
        if dispatcher is None:
            dispatcher = ReportDispatcher([
                CippReporter(
                    config.cipp_server_url,
                    tenant_id=config.cipp_tenant_id,
                    enabled=config.enable_cipp_reporting,
                    timeout=config.report_timeout,
                    engine_version=__version__,
                )
            ])
        if "settings_store" not in kwargs and config.settings_path is not None:
            kwargs["settings_store"] = FileSettingsStore(config.settings_path)
        return cls(
            engine or DetectionEngine.from_config(config),
            source,
            dispatcher=dispatcher,
            defaults=config.protection_defaults(),
            settings_timeout=config.settings_timeout,
            engine_version=__version__,
            **kwargs,
        )

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    @property
    def is_blocked(self) -> bool:
        return bool(self.verdict and self.verdict.is_blocked)

    @property
    def monitoring(self) -> bool:
        """Whether the current state still wants change-triggered re-runs."""
        if self.closed or self.is_blocked:
            return False
        return bool(self.action and self.action.continue_monitoring)

    async def load_settings(self) -> ProtectionSettings:
        """Read per-page settings; any failure falls back to the defaults."""
        try:
            stored = await asyncio.wait_for(
                self.settings_store.get(SETTINGS_KEY), timeout=self.settings_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Settings store timed out; using defaults")
            return self.defaults
        except Exception as exc:
            logger.warning("Settings store failed (%s); using defaults", exc)
            return self.defaults
        return ProtectionSettings.from_dict(stored, self.defaults)

    async def _capture(self) -> PageSnapshot:
        if isinstance(self.source, PageSnapshot):
            return self.source
        result = self.source()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run(self, reason: str = "initial") -> Optional[DetectionVerdict]:
        """Run one full pass. Returns None when no verdict could be produced."""
        if self.closed:
            return None
        async with self._lock:
            self.scan_count += 1
            self.last_scan_at = time.monotonic()
            settings = await self.load_settings()
            self.settings = settings

            try:
                snapshot = await self._capture()
            except Exception as exc:
                logger.error("Page capture failed (%s pass): %s", reason, exc)
                return None
            self.snapshot = snapshot

            logger.debug("Evaluation pass %d (%s) for %s", self.scan_count, reason, snapshot.url)
            try:
                verdict = await self.engine.evaluate(snapshot.url, snapshot, settings)
            except RuleLoadError as exc:
                logger.error("Detection rules unavailable: %s", exc)
                await self._fallback(snapshot)
                return None

            await self.apply(verdict, settings)
            return verdict

    async def _fallback(self, snapshot: PageSnapshot) -> None:
        if self.fallback_shown:
            return
        if self.engine.fallback_check(snapshot.url, snapshot):
            self.fallback_shown = True
            await self.renderer.render_fallback_warning(snapshot.url)

    async def apply(self, verdict: DetectionVerdict, settings: ProtectionSettings) -> ProtectiveAction:
        """Record the verdict as current and carry out its action."""
        action = self.policy.decide(verdict, settings)
        self.verdict = verdict
        self.action = action
        self.banner_shown = action.shows_banner

        try:
            await self.renderer.render(verdict, action)
        except Exception as exc:
            logger.error("Renderer failed for %s: %s", verdict.url, exc)

        self.event_log.record(build_protection_event(verdict, action, settings))
        if action.report:
            self._sync_reporters(settings)
            self.dispatcher.dispatch(build_report(verdict, action, settings, self.engine_version))
        return action

    def _sync_reporters(self, settings: ProtectionSettings) -> None:
        for sink in self.dispatcher.sinks:
            if not isinstance(sink, CippReporter):
                continue
            sink.enabled = settings.cipp_reporting_enabled
            if settings.cipp_server_url:
                sink.server_url = settings.cipp_server_url.strip().rstrip("/")
            if settings.cipp_tenant_id:
                sink.tenant_id = settings.cipp_tenant_id

    async def on_dynamic_script(self, text: str) -> Optional[DetectionVerdict]:
        """Scan script text introduced after load.

        A finding replaces the current verdict only when it is at least as
        severe; a blocked page stays blocked.
        """
        if self.closed or self.is_blocked or not text:
            return None
        async with self._lock:
            settings = await self.load_settings()
            url = self.snapshot.url if self.snapshot is not None else ""
            if not url:
                try:
                    self.snapshot = await self._capture()
                except Exception as exc:
                    logger.error("Page capture failed (dynamic script): %s", exc)
                    return None
                url = self.snapshot.url
            try:
                verdict = await self.engine.scan_dynamic_script(url, text, self.snapshot, settings)
            except RuleLoadError as exc:
                logger.error("Detection rules unavailable for dynamic script scan: %s", exc)
                return None
            if verdict is None:
                return None

            current = _VERDICT_RANK.get(self.verdict.verdict, 0) if self.verdict else 0
            if _VERDICT_RANK.get(verdict.verdict, 0) < current:
                logger.info("Dynamic script finding on %s kept below current verdict", url)
                return verdict
            await self.apply(verdict, settings)
            return verdict

    def dismiss_banner(self) -> None:
        """The user closed the warning banner."""
        self.banner_shown = False

    def status(self) -> dict:
        """Current state for the host UI."""
        return {
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "action": self.action.to_dict() if self.action else None,
            "scanCount": self.scan_count,
            "bannerShown": self.banner_shown,
            "fallbackShown": self.fallback_shown,
            "monitoring": self.monitoring,
            "settings": self.settings.to_dict(),
            "recentEvents": self.event_log.recent(10),
        }

    async def close(self) -> None:
        """Page teardown: drop pending reports."""
        self.closed = True
        await self.dispatcher.close()
