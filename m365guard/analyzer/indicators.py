"""Phishing-indicator scanner.

Each indicator is tested against the page source, then the visible text,
then the URL, then its ``additional_checks`` substrings; the first surface
that matches wins. A match only counts when no suppression applies:

1. ``context_required`` is set and none of its substrings are present.
2. Social-engineering/brand-impersonation indicators on an excluded domain
   that reads as a legitimate discussion (legitimate context present, no
   suspicious context, no credential inputs).
3. Designated Microsoft-branding indicators on pages carrying a legitimate
   SSO pattern.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

from ..config import DEFAULT_MAJOR_PLATFORM_DOMAINS
from ..constants import DISCUSSION_SUPPRESSIBLE_CATEGORIES
from ..errors import PatternTimeoutError
from ..utils.domains import domain_in_set, url_hostname
from .detector_models import ScanResult, Threat
from .metrics import DetectionMetrics
from .patterns import contains_any, matches, matches_any
from .rule_models import ExclusionSystem, Indicator
from .snapshot import PageSnapshot

logger = logging.getLogger(__name__)


class _Surfaces:
    """Texts an indicator is matched against, truncated to the scan budget."""

    def __init__(self, ordered: list[tuple[str, str]], context: str, has_credential_inputs: bool):
        self.ordered = ordered
        self.context = context
        self.has_credential_inputs = has_credential_inputs


class PhishingIndicatorScanner:
    """Evaluates phishing indicators and aggregates a phishing score."""

    def __init__(
        self,
        budget_seconds: float = 0.5,
        max_content_chars: int = 500_000,
        major_platform_domains: Iterable[str] = DEFAULT_MAJOR_PLATFORM_DOMAINS,
        metrics: Optional[DetectionMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.budget_seconds = budget_seconds
        self.max_content_chars = max_content_chars
        self.major_platform_domains = tuple(major_platform_domains)
        self.metrics = metrics
        self._clock = clock

    def _truncate(self, value: str) -> tuple[str, bool]:
        value = value or ""
        if self.max_content_chars and len(value) > self.max_content_chars:
            return value[: self.max_content_chars], True
        return value, False

    def is_major_platform(self, url: str, exclusions: Optional[ExclusionSystem] = None) -> bool:
        platforms = self.major_platform_domains
        if exclusions is not None and exclusions.major_platform_domains is not None:
            platforms = exclusions.major_platform_domains
        host = url_hostname(url)
        # Exact hosts only: user content lives on platform subdomains.
        return bool(host) and domain_in_set(host, platforms, include_subdomains=False)

    def scan(
        self,
        indicators: Iterable[Indicator],
        snapshot: PageSnapshot,
        url: str,
        exclusions: Optional[ExclusionSystem] = None,
        excluded_domain: bool = False,
    ) -> ScanResult:
        """Scan a page snapshot. Never raises."""
        try:
            if self.is_major_platform(url, exclusions):
                logger.debug("Skipping indicator scan on major platform %s", url_hostname(url))
                return ScanResult(skipped_reason="major platform")

            source, cut_source = self._truncate(snapshot.html)
            text, cut_text = self._truncate(snapshot.text)
            surfaces = _Surfaces(
                ordered=[("source", source), ("text", text), ("url", url or "")],
                context=f"{source}\n{text}",
                has_credential_inputs=snapshot.has_credential_inputs,
            )
            result = self._scan(indicators, surfaces, url, exclusions, excluded_domain)
            result.incomplete = result.incomplete or cut_source or cut_text
            return result
        except Exception as exc:
            logger.error("Phishing indicator scan failed: %s", exc)
            return ScanResult(incomplete=True, skipped_reason=f"error: {exc}")

    def scan_text(
        self,
        indicators: Iterable[Indicator],
        text: str,
        url: str,
        exclusions: Optional[ExclusionSystem] = None,
        excluded_domain: bool = False,
        snapshot: Optional[PageSnapshot] = None,
    ) -> ScanResult:
        """Scan an extra text surface, such as dynamically introduced script."""
        try:
            if self.is_major_platform(url, exclusions):
                return ScanResult(skipped_reason="major platform")
            body, cut = self._truncate(text)
            page_context = f"{snapshot.html}\n{snapshot.text}" if snapshot is not None else ""
            surfaces = _Surfaces(
                ordered=[("dynamic_script", body)],
                context=f"{body}\n{page_context}",
                has_credential_inputs=bool(snapshot and snapshot.has_credential_inputs),
            )
            result = self._scan(indicators, surfaces, url, exclusions, excluded_domain)
            result.incomplete = result.incomplete or cut
            return result
        except Exception as exc:
            logger.error("Dynamic script scan failed: %s", exc)
            return ScanResult(incomplete=True, skipped_reason=f"error: {exc}")

    def _scan(
        self,
        indicators: Iterable[Indicator],
        surfaces: _Surfaces,
        url: str,
        exclusions: Optional[ExclusionSystem],
        excluded_domain: bool,
    ) -> ScanResult:
        result = ScanResult()
        exclusions = exclusions or ExclusionSystem()
        deadline = self._clock() + self.budget_seconds

        for indicator in indicators:
            if self._clock() > deadline:
                logger.warning("Indicator scan budget exhausted; results are partial")
                result.incomplete = True
                break
            try:
                matched_in = self._match(indicator, surfaces, deadline)
                if not matched_in:
                    continue
                reason = self._suppression(indicator, surfaces, exclusions, excluded_domain)
                if reason:
                    logger.debug("Indicator %s suppressed: %s", indicator.id, reason)
                    result.suppressed.append(indicator.id)
                    continue
            except PatternTimeoutError as exc:
                logger.warning("Indicator %s stopped the scan: %s", indicator.id, exc)
                result.incomplete = True
                break
            except Exception as exc:
                logger.warning("Indicator %s failed: %s", indicator.id, exc)
                continue

            result.threats.append(Threat(
                id=indicator.id,
                type="phishing_indicator",
                description=indicator.description,
                confidence=indicator.confidence,
                severity=indicator.severity,
                action=indicator.action,
                category=indicator.category,
                matched_in=matched_in,
            ))
            result.score += indicator.severity.weight * indicator.confidence
            if self.metrics is not None:
                self.metrics.record_indicator_hit(indicator.category, indicator.id, url_hostname(url))

        return result

    def _match(self, indicator: Indicator, surfaces: _Surfaces, deadline: float) -> str:
        for name, value in surfaces.ordered:
            if matches(value, indicator.pattern, indicator.flags, timeout=deadline - self._clock()):
                return name
        if indicator.additional_checks and contains_any(surfaces.context, indicator.additional_checks):
            return "additional_checks"
        return ""

    @staticmethod
    def _suppression(
        indicator: Indicator,
        surfaces: _Surfaces,
        exclusions: ExclusionSystem,
        excluded_domain: bool,
    ) -> str:
        if indicator.context_required and not contains_any(surfaces.context, indicator.context_required):
            return "required context missing"

        if (
            excluded_domain
            and indicator.category in DISCUSSION_SUPPRESSIBLE_CATEGORIES
            and contains_any(surfaces.context, exclusions.legitimate_contexts)
            and not contains_any(surfaces.context, exclusions.suspicious_contexts)
            and not surfaces.has_credential_inputs
        ):
            return "legitimate discussion on excluded domain"

        if indicator.id in exclusions.sso_exempt_indicators and matches_any(
            surfaces.context, exclusions.legitimate_sso_patterns
        ):
            return "legitimate SSO"

        return ""
