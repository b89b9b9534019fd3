"""Detector data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ..constants import Severity, Verdict


@dataclass(frozen=True)
class Threat:
    """One triggered indicator or blocking rule."""

    id: str
    type: str
    description: str
    confidence: Optional[float] = None
    severity: Optional[Severity] = None
    action: str = "warn"
    category: str = ""
    matched_in: str = ""  # source | text | url | additional_checks | dynamic_script

    @property
    def is_critical_block(self) -> bool:
        return self.severity == Severity.CRITICAL and self.action == "block"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "confidence": self.confidence,
            "severity": str(self.severity) if self.severity is not None else None,
            "action": self.action,
            "category": self.category,
            "matchedIn": self.matched_in,
        }


@dataclass
class ScanResult:
    """Output of the phishing-indicator scanner."""

    threats: list[Threat] = field(default_factory=list)
    score: float = 0.0
    incomplete: bool = False
    suppressed: list[str] = field(default_factory=list)
    skipped_reason: str = ""

    @property
    def critical_block_threats(self) -> list[Threat]:
        return [t for t in self.threats if t.is_critical_block]


@dataclass
class BlockingResult:
    should_block: bool = False
    reason: str = ""
    rule_id: Optional[str] = None
    severity: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TriggeredRule:
    id: str
    weight: float
    description: str

    def to_dict(self) -> dict:
        return {"id": self.id, "weight": self.weight, "description": self.description}


@dataclass
class LegitimacyResult:
    score: float = 0.0
    triggered_rules: list[TriggeredRule] = field(default_factory=list)
    threshold: float = 85.0
    error: Optional[str] = None


@dataclass
class DetectionVerdict:
    """Result of one evaluation pass. Replaced, never merged, by the next pass."""

    verdict: Verdict
    url: str
    reason: str = ""
    threats: list[Threat] = field(default_factory=list)
    score: Optional[float] = None
    threshold: Optional[float] = None
    severity: Optional[str] = None
    is_blocked: bool = False
    rule_id: Optional[str] = None
    triggered_rules: list[TriggeredRule] = field(default_factory=list)
    client_id: Optional[str] = None
    rogue_app: Optional[dict] = None
    incomplete_scan: bool = False
    recognized: Optional[bool] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_suspicious(self) -> bool:
        return self.verdict.is_threat

    def to_dict(self) -> dict:
        return {
            "verdict": str(self.verdict),
            "url": self.url,
            "isSuspicious": self.is_suspicious,
            "isBlocked": self.is_blocked,
            "reason": self.reason,
            "threats": [t.to_dict() for t in self.threats],
            "score": self.score,
            "threshold": self.threshold,
            "severity": self.severity,
            "ruleId": self.rule_id,
            "triggeredRules": [r.to_dict() for r in self.triggered_rules],
            "clientId": self.client_id,
            "rogueApp": self.rogue_app,
            "incompleteScan": self.incomplete_scan,
            "timestamp": self.timestamp.isoformat(),
        }
