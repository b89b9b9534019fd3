"""Detection engine: runs one evaluation pass and produces a verdict.

Transition order, first match wins:

1. Trusted login origin: rogue OAuth client -> rogue-app, else trusted.
2. Microsoft (non-login) or excluded origin -> safe.
3. Not recognized as an M365 login page: indicator scan only.
4. Recognized on an untrusted origin: rogue check, blocking rules, then
   indicator scan and legitimacy score combined.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..config import Config, ProtectionSettings
from ..constants import Severity, Verdict
from ..host import RogueAppLookup
from ..utils.domains import query_param, url_hostname
from .blocking import BlockingRuleEvaluator
from .detector_models import DetectionVerdict, ScanResult, Threat
from .indicators import PhishingIndicatorScanner
from .legitimacy import LegitimacyScorer
from .metrics import DetectionMetrics
from .origin import classify_origin
from .recognizer import recognize
from .rogue_apps import NOT_ROGUE, RogueAppMatch, RogueAppRegistry
from .rule_models import RuleDocument
from .rule_store import FileRuleSource, HttpRuleSource, RuleStore
from .snapshot import PageSnapshot

logger = logging.getLogger(__name__)

HIGH_SEVERITY_RATIO = 0.3
TRUSTED_SCORE = 100.0

# Last-resort markers used only when no rule document is available.
FALLBACK_SELECTOR = 'input[name="loginfmt"], #i0116'
FALLBACK_LEGITIMATE_HOST = "microsoftonline.com"


class DetectionEngine:
    """Rule-driven M365 phishing detection."""

    def __init__(
        self,
        rule_store: RuleStore,
        rogue_lookup: Optional[RogueAppLookup] = None,
        scanner: Optional[PhishingIndicatorScanner] = None,
        blocking: Optional[BlockingRuleEvaluator] = None,
        scorer: Optional[LegitimacyScorer] = None,
        metrics: Optional[DetectionMetrics] = None,
        rogue_lookup_timeout: float = 2.0,
    ):
        self.rule_store = rule_store
        self.rogue_lookup = rogue_lookup
        self.metrics = metrics or DetectionMetrics()
        self.scanner = scanner or PhishingIndicatorScanner(metrics=self.metrics)
        self.blocking = blocking or BlockingRuleEvaluator()
        self.scorer = scorer or LegitimacyScorer()
        self.rogue_lookup_timeout = rogue_lookup_timeout

    @classmethod
    def from_config(cls, config: Config) -> "DetectionEngine":
        if config.rules_path is not None:
            source = FileRuleSource(config.rules_path)
        else:
            source = HttpRuleSource(config.rules_url, timeout=config.rule_load_timeout)
        metrics = DetectionMetrics()
        return cls(
            rule_store=RuleStore(source, timeout=config.rule_load_timeout),
            rogue_lookup=RogueAppRegistry(config.rogue_apps_path),
            scanner=PhishingIndicatorScanner(
                budget_seconds=config.scan_budget_ms / 1000.0,
                max_content_chars=config.max_scan_chars,
                major_platform_domains=config.major_platform_domains,
                metrics=metrics,
            ),
            metrics=metrics,
            rogue_lookup_timeout=config.rogue_lookup_timeout,
        )

    async def check_rogue_app(self, url: str) -> tuple[Optional[str], RogueAppMatch]:
        """Look up the URL's OAuth ``client_id``; failures count as not rogue."""
        client_id = query_param(url, "client_id")
        if not client_id or self.rogue_lookup is None:
            return client_id, NOT_ROGUE
        try:
            match = await asyncio.wait_for(
                self.rogue_lookup.lookup(client_id), timeout=self.rogue_lookup_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Rogue app lookup timed out for client_id %s", client_id)
            return client_id, NOT_ROGUE
        except Exception as exc:
            logger.warning("Rogue app lookup failed for client_id %s: %s", client_id, exc)
            return client_id, NOT_ROGUE
        return client_id, match or NOT_ROGUE

    async def evaluate(
        self,
        url: str,
        snapshot: PageSnapshot,
        settings: Optional[ProtectionSettings] = None,
    ) -> DetectionVerdict:
        """Run one full pass. Only ``RuleLoadError`` escapes."""
        document = await self.rule_store.get()
        settings = settings or ProtectionSettings()
        verdict = await self._evaluate(document, url, snapshot, settings)
        self.metrics.record_verdict(str(verdict.verdict), verdict.incomplete_scan)
        if verdict.rule_id and verdict.verdict == Verdict.BLOCKED:
            self.metrics.record_blocking_rule(verdict.rule_id)
        logger.info(
            "Verdict for %s: %s (%s)", url_hostname(url) or url[:100], verdict.verdict, verdict.reason
        )
        return verdict

    async def _evaluate(
        self,
        document: RuleDocument,
        url: str,
        snapshot: PageSnapshot,
        settings: ProtectionSettings,
    ) -> DetectionVerdict:
        origin = classify_origin(url, document)
        threshold = document.legitimate_threshold

        if origin.is_trusted_login:
            client_id, rogue = await self.check_rogue_app(url)
            if rogue.is_rogue:
                return self._rogue_verdict(url, client_id, rogue)
            return DetectionVerdict(
                verdict=Verdict.TRUSTED,
                url=url,
                reason="Trusted Microsoft login domain",
                score=TRUSTED_SCORE,
                threshold=threshold,
                client_id=client_id,
            )

        if origin.is_microsoft_domain:
            return DetectionVerdict(verdict=Verdict.SAFE, url=url, reason="Microsoft domain (not a login page)")
        if origin.is_excluded_domain:
            return DetectionVerdict(verdict=Verdict.SAFE, url=url, reason="Excluded domain")

        # Excluded origins returned above, so the discussion suppression
        # (excluded_domain) only applies to direct scanner calls.
        recognition = recognize(snapshot, document.m365_detection_requirements)
        if not recognition.recognized:
            scan = self.scanner.scan(document.phishing_indicators, snapshot, url, document.exclusion_system)
            return self._unrecognized_verdict(url, scan, settings)

        client_id, rogue = await self.check_rogue_app(url)
        if rogue.is_rogue:
            return self._rogue_verdict(url, client_id, rogue)

        block = self.blocking.evaluate(document.blocking_rules, snapshot)
        if block.should_block:
            return DetectionVerdict(
                verdict=Verdict.BLOCKED,
                url=url,
                reason=block.reason,
                severity=block.severity or "critical",
                is_blocked=settings.protection_enabled,
                rule_id=block.rule_id,
                client_id=client_id,
                recognized=True,
                threats=[Threat(
                    id=block.rule_id or "blocking_rules",
                    type="blocking_rule",
                    description=block.reason,
                    severity=Severity.from_string(block.severity or "critical"),
                    action="block",
                )],
            )

        scan = self.scanner.scan(document.phishing_indicators, snapshot, url, document.exclusion_system)
        legitimacy = self.scorer.score(document.rules, snapshot, url, document)
        combined = legitimacy.score - scan.score
        threshold = legitimacy.threshold

        common = dict(
            url=url,
            threats=list(scan.threats),
            score=combined,
            threshold=threshold,
            triggered_rules=list(legitimacy.triggered_rules),
            client_id=client_id,
            incomplete_scan=scan.incomplete,
            recognized=True,
        )

        critical = scan.critical_block_threats
        if critical:
            return DetectionVerdict(
                verdict=Verdict.BLOCKED,
                reason=f"Critical phishing indicators detected: {', '.join(t.id for t in critical)}",
                severity="critical",
                is_blocked=settings.protection_enabled,
                **common,
            )

        if combined < threshold:
            severity = "high" if combined < threshold * HIGH_SEVERITY_RATIO else "medium"
            reason = f"Low legitimacy score: {combined:g}/{threshold:g}"
            if severity == "high":
                return DetectionVerdict(
                    verdict=Verdict.BLOCKED,
                    reason=reason,
                    severity=severity,
                    is_blocked=settings.protection_enabled,
                    **common,
                )
            return DetectionVerdict(verdict=Verdict.SUSPICIOUS, reason=reason, severity=severity, **common)

        return DetectionVerdict(verdict=Verdict.SAFE, reason="Legitimacy score acceptable", **common)

    @staticmethod
    def _rogue_verdict(url: str, client_id: Optional[str], rogue: RogueAppMatch) -> DetectionVerdict:
        reason = f"Rogue OAuth application detected: {rogue.app_name}"
        if rogue.description:
            reason = f"{reason} - {rogue.description}"
        return DetectionVerdict(
            verdict=Verdict.ROGUE_APP,
            url=url,
            reason=reason,
            severity="critical",
            client_id=client_id,
            rogue_app=rogue.to_dict(),
            threats=[Threat(
                id="rogue_app",
                type="rogue_app_detection",
                description=reason,
                severity=Severity.CRITICAL,
                action="warn",
                category="oauth",
            )],
        )

    @staticmethod
    def _unrecognized_verdict(url: str, scan: ScanResult, settings: ProtectionSettings) -> DetectionVerdict:
        common = dict(
            url=url,
            threats=list(scan.threats),
            score=scan.score,
            incomplete_scan=scan.incomplete,
            recognized=False,
        )
        critical = scan.critical_block_threats
        if critical:
            return DetectionVerdict(
                verdict=Verdict.BLOCKED,
                reason=f"Critical phishing indicators detected: {', '.join(t.id for t in critical)}",
                severity="critical",
                is_blocked=settings.protection_enabled,
                **common,
            )
        if scan.threats:
            worst = max(t.severity or Severity.LOW for t in scan.threats)
            return DetectionVerdict(
                verdict=Verdict.SUSPICIOUS,
                reason=f"Phishing indicators detected: {', '.join(t.id for t in scan.threats)}",
                severity=str(worst),
                **common,
            )
        return DetectionVerdict(verdict=Verdict.SAFE, reason="Not a Microsoft 365 login page", **common)

    async def scan_dynamic_script(
        self,
        url: str,
        text: str,
        snapshot: Optional[PageSnapshot] = None,
        settings: Optional[ProtectionSettings] = None,
    ) -> Optional[DetectionVerdict]:
        """Scan dynamically introduced script text; None when nothing matched.

        Trusted, Microsoft and excluded origins are not scanned.
        """
        document = await self.rule_store.get()
        settings = settings or ProtectionSettings()
        origin = classify_origin(url, document)
        if origin.is_trusted_login or origin.is_microsoft_domain or origin.is_excluded_domain:
            return None
        scan = self.scanner.scan_text(
            document.phishing_indicators, text, url, document.exclusion_system, snapshot=snapshot
        )
        if not scan.threats:
            return None
        verdict = self._unrecognized_verdict(url, scan, settings)
        verdict.reason = f"Dynamic script: {verdict.reason}"
        self.metrics.record_verdict(str(verdict.verdict), verdict.incomplete_scan)
        return verdict

    @staticmethod
    def fallback_check(url: str, snapshot: PageSnapshot) -> bool:
        """Minimal hardcoded check used only when rules cannot be loaded."""
        try:
            has_login_markup = snapshot.exists(FALLBACK_SELECTOR)
        except Exception as exc:
            logger.error("Fallback check failed: %s", exc)
            return False
        return has_login_markup and FALLBACK_LEGITIMATE_HOST not in url_hostname(url)
