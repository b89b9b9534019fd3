"""Typed view of the detection rule document.

All models are frozen: a loaded ``RuleDocument`` is shared read-only by
every analyzer stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from ..constants import Severity

BLOCKING_RULE_TYPES = frozenset({
    "form_action_validation",
    "resource_validation",
    "css_spoofing_validation",
})

LEGITIMACY_RULE_TYPES = frozenset({
    "url",
    "form_action",
    "dom",
    "content",
    "network",
    "referrer_validation",
    "csp_validation",
})

ELEMENT_TYPES = frozenset({"source_content", "css_pattern"})

DEFAULT_LEGITIMATE_THRESHOLD = 85.0


def freeze_mapping(mapping: Optional[Mapping]) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Element:
    """One piece of evidence that a page presents itself as an M365 login."""

    id: str
    category: str  # "primary" | "secondary"
    type: str = "source_content"
    patterns: tuple[str, ...] = ()
    weight: float = 1.0
    flags: Optional[str] = None
    description: str = ""

    @property
    def is_primary(self) -> bool:
        return self.category == "primary"


@dataclass(frozen=True)
class ThresholdSet:
    """Recognition thresholds with defaults for incomplete documents."""

    minimum_primary_elements: int = 1
    minimum_total_weight: float = 4
    minimum_elements_overall: int = 3
    minimum_secondary_only_weight: float = 6
    minimum_secondary_only_elements: int = 5


@dataclass(frozen=True)
class DetectionRequirements:
    primary_elements: tuple[Element, ...] = ()
    secondary_elements: tuple[Element, ...] = ()
    thresholds: ThresholdSet = field(default_factory=ThresholdSet)

    @property
    def elements(self) -> tuple[Element, ...]:
        return self.primary_elements + self.secondary_elements


@dataclass(frozen=True)
class BlockingRule:
    """Structural integrity rule; firing blocks the page outright."""

    id: str
    type: str
    condition: Mapping = field(default_factory=lambda: freeze_mapping(None))
    severity: str = "critical"
    description: str = ""


@dataclass(frozen=True)
class Indicator:
    """Weighted phishing signature."""

    id: str
    pattern: str
    flags: Optional[str] = "i"
    category: str = "general"
    severity: Severity = Severity.MEDIUM
    confidence: float = 0.5
    description: str = ""
    action: str = "warn"  # "warn" | "block"
    additional_checks: tuple[str, ...] = ()
    context_required: tuple[str, ...] = ()

    @property
    def is_critical_block(self) -> bool:
        return self.severity == Severity.CRITICAL and self.action == "block"


@dataclass(frozen=True)
class LegitimacyRule:
    """Positive-evidence rule; firing adds ``weight`` to the legitimacy score."""

    id: str
    type: str
    condition: Mapping = field(default_factory=lambda: freeze_mapping(None))
    weight: float = 0.0
    description: str = ""


@dataclass(frozen=True)
class ExclusionSystem:
    domain_patterns: tuple[str, ...] = ()
    legitimate_contexts: tuple[str, ...] = ()
    suspicious_contexts: tuple[str, ...] = ()
    legitimate_sso_patterns: tuple[str, ...] = ()
    sso_exempt_indicators: frozenset[str] = frozenset()
    # None means "use the configured default list".
    major_platform_domains: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class RuleDocument:
    """Root configuration for every detection decision."""

    trusted_login_patterns: tuple[str, ...] = ()
    microsoft_domain_patterns: tuple[str, ...] = ()
    m365_detection_requirements: DetectionRequirements = field(default_factory=DetectionRequirements)
    blocking_rules: tuple[BlockingRule, ...] = ()
    phishing_indicators: tuple[Indicator, ...] = ()
    exclusion_system: ExclusionSystem = field(default_factory=ExclusionSystem)
    rules: tuple[LegitimacyRule, ...] = ()
    legitimate_threshold: float = DEFAULT_LEGITIMATE_THRESHOLD
    version: str = "1.0"
    last_updated: Optional[str] = None

    def summary(self) -> dict:
        """Counts per rule category, for logging and status queries."""
        req = self.m365_detection_requirements
        return {
            "version": self.version,
            "trusted_login_patterns": len(self.trusted_login_patterns),
            "microsoft_domain_patterns": len(self.microsoft_domain_patterns),
            "primary_elements": len(req.primary_elements),
            "secondary_elements": len(req.secondary_elements),
            "blocking_rules": len(self.blocking_rules),
            "phishing_indicators": len(self.phishing_indicators),
            "exclusion_patterns": len(self.exclusion_system.domain_patterns),
            "legitimacy_rules": len(self.rules),
        }
