"""Legitimacy scoring from positive-evidence rules.

Every rule that fires adds its weight to the score. Rules that fail to
evaluate are skipped; if the scorer as a whole fails, the score is 0, the
most suspicious value, because this score decides whether a recognized
login page is legitimate enough to allow.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Iterable, Mapping, Optional

from ..errors import ScorerError
from ..utils.domains import url_hostname, url_origin
from .detector_models import LegitimacyResult, TriggeredRule
from .patterns import matches_any
from .rule_models import DEFAULT_LEGITIMATE_THRESHOLD, LegitimacyRule, RuleDocument
from .rules import LegitimacyCheck, RuleContext, condition_list
from .snapshot import PageSnapshot

logger = logging.getLogger(__name__)

DEFAULT_CSP_RATIO = 0.8


class UrlCheck:
    type = "url"

    def apply(self, condition: Mapping, context: RuleContext) -> bool:
        hostname = url_hostname(context.url)
        domains = {d.lower() for d in condition_list(condition, "domains")}
        return bool(hostname) and hostname in domains


class FormActionCheck:
    type = "form_action"

    def apply(self, condition: Mapping, context: RuleContext) -> bool:
        needle = str(condition.get("contains") or "")
        if not needle:
            return False
        forms = context.snapshot.forms(condition.get("form_selector") or "form")
        return any(needle in form.action for form in forms)


class DomCheck:
    type = "dom"

    def apply(self, condition: Mapping, context: RuleContext) -> bool:
        return any(context.snapshot.exists(s) for s in condition_list(condition, "selectors"))


class ContentCheck:
    type = "content"

    def apply(self, condition: Mapping, context: RuleContext) -> bool:
        needles = condition_list(condition, "contains")
        return any(needle in context.snapshot.html for needle in needles)


class NetworkCheck:
    type = "network"

    def apply(self, condition: Mapping, context: RuleContext) -> bool:
        marker = str(condition.get("network_pattern") or "")
        required = str(condition.get("required_domain") or "")
        if not marker or not required:
            return False
        for url in context.snapshot.resources:
            # The first resource carrying the marker decides.
            if marker in url:
                return url.startswith(required)
        return False


class ReferrerCheck:
    type = "referrer_validation"

    def apply(self, condition: Mapping, context: RuleContext) -> bool:
        referrer = context.snapshot.referrer
        if not referrer:
            return False
        allowed = condition_list(condition, "referrers")
        if allowed:
            return any(referrer == ref or referrer.startswith(ref) for ref in allowed)
        document = context.document
        if document is None:
            return False
        origin = url_origin(referrer)
        return bool(origin) and (
            matches_any(origin, document.microsoft_domain_patterns)
            or matches_any(origin, document.trusted_login_patterns)
        )


def _wildcard_regex(domain: str) -> str:
    return r"[^\s]*".join(re.escape(part) for part in domain.split("*"))


class CspCheck:
    type = "csp_validation"

    def apply(self, condition: Mapping, context: RuleContext) -> bool:
        snapshot = context.snapshot
        header = (
            snapshot.headers.get("content-security-policy-report-only")
            or snapshot.content_security_policy
        )
        required = condition_list(condition, "required_domains")
        if not header or not required:
            return False
        ratio = float(condition.get("minimum_ratio") or DEFAULT_CSP_RATIO)
        present = sum(1 for domain in required if re.search(_wildcard_regex(domain), header, re.I))
        return present / len(required) >= ratio


DEFAULT_CHECKS: tuple[LegitimacyCheck, ...] = (
    UrlCheck(),
    FormActionCheck(),
    DomCheck(),
    ContentCheck(),
    NetworkCheck(),
    ReferrerCheck(),
    CspCheck(),
)


class LegitimacyScorer:
    """Scores how much positive evidence of legitimacy a page carries."""

    def __init__(self, checks: Iterable[LegitimacyCheck] = DEFAULT_CHECKS):
        self._checks = {check.type: check for check in checks}

    def score(
        self,
        rules: Iterable[LegitimacyRule],
        snapshot: PageSnapshot,
        url: str,
        document: Optional[RuleDocument] = None,
        threshold: Optional[float] = None,
    ) -> LegitimacyResult:
        if threshold is None:
            threshold = document.legitimate_threshold if document else DEFAULT_LEGITIMATE_THRESHOLD
        try:
            return self._score(rules, RuleContext(snapshot, url, document), threshold)
        except Exception as exc:
            logger.error("Legitimacy scoring failed: %s", exc)
            return LegitimacyResult(score=0.0, threshold=threshold, error=str(exc))

    def _score(self, rules: Iterable[LegitimacyRule], context: RuleContext, threshold: float) -> LegitimacyResult:
        result = LegitimacyResult(threshold=threshold)
        for rule in rules:
            check = self._checks.get(rule.type)
            if check is None:
                logger.warning("Unknown legitimacy rule type %r (rule %s); skipping", rule.type, rule.id)
                continue
            try:
                fired = check.apply(rule.condition, context)
            except Exception as exc:
                logger.warning("Legitimacy rule %s failed: %s", rule.id, exc)
                continue
            if fired:
                result.score += rule.weight
                result.triggered_rules.append(TriggeredRule(rule.id, rule.weight, rule.description))

        if not math.isfinite(result.score):
            raise ScorerError(f"legitimacy score is not finite: {result.score}")
        return result


def score_legitimacy(
    rules: Iterable[LegitimacyRule],
    snapshot: PageSnapshot,
    url: str,
    document: Optional[RuleDocument] = None,
) -> LegitimacyResult:
    return LegitimacyScorer().score(rules, snapshot, url, document)
