"""Structured protection events and URL defanging."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from ..config import ProtectionSettings
from ..constants import LEGITIMATE_REPORT_TYPE, ActionKind
from ..utils.domains import redirect_hostname, url_origin

if TYPE_CHECKING:
    from ..analyzer.actions import ProtectiveAction
    from ..analyzer.detector_models import DetectionVerdict

logger = logging.getLogger(__name__)

DEFANGED_COLON = "[:]"

THREAT_EVENT_TYPES = frozenset({
    "threat_detected",
    "threat_blocked",
    "threat_detected_no_action",
    "content_threat_detected",
})

# event type -> (default action, default threat level)
EVENT_DEFAULTS: dict[str, tuple[str, str]] = {
    "threat_detected": ("blocked", "high"),
    "threat_blocked": ("blocked", "high"),
    "threat_detected_no_action": ("warned", "high"),
    "content_threat_detected": ("blocked", "high"),
    "legitimate_access": ("allowed", "none"),
    "url_access": ("allowed", "none"),
    "page_scanned": ("scanned", "none"),
}


def defang(value: Optional[str]) -> str:
    """Make a URL non-clickable by bracketing every colon.

    Already bracketed colons are left alone, so defanging twice changes
    nothing.
    """
    if not value:
        return ""
    return DEFANGED_COLON.join(part.replace(":", DEFANGED_COLON) for part in value.split(DEFANGED_COLON))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_protection_event(
    verdict: DetectionVerdict,
    action: ProtectiveAction,
    settings: ProtectionSettings,
) -> dict:
    """Event describing one verdict, before enrichment."""
    event = {
        "type": action.event_type,
        "verdict": str(verdict.verdict),
        "url": verdict.url,
        "origin": url_origin(verdict.url),
        "reason": verdict.reason,
        "timestamp": verdict.timestamp.isoformat(),
        "protectionEnabled": settings.protection_enabled,
    }
    if action.kind == ActionKind.BLOCK:
        event["action"] = "blocked"
    elif action.kind == ActionKind.WARN:
        event["action"] = "warned"
    if verdict.severity:
        event["threatLevel"] = verdict.severity
    if verdict.score is not None:
        event["score"] = verdict.score
    if verdict.threshold is not None:
        event["threshold"] = verdict.threshold
    if verdict.rule_id:
        event["rule"] = verdict.rule_id
    if verdict.client_id:
        event["clientId"] = verdict.client_id
    if verdict.rogue_app:
        event["appName"] = verdict.rogue_app.get("appName")
    if verdict.threats:
        event["phishingIndicators"] = [t.id for t in verdict.threats]
    if verdict.triggered_rules:
        event["triggeredRules"] = [r.to_dict() for r in verdict.triggered_rules]
    redirect = redirect_hostname(verdict.url)
    if redirect:
        event["redirectTo"] = redirect
    return event


def enrich_event(event: dict) -> dict:
    """Fill default action/threat level and defang threat URLs."""
    enriched = dict(event)
    enriched.setdefault("timestamp", _now())
    event_type = enriched.get("type", "")
    default_action, default_level = EVENT_DEFAULTS.get(event_type, ("logged", "info"))
    enriched.setdefault("action", default_action)
    enriched.setdefault("threatLevel", default_level)

    if event_type in THREAT_EVENT_TYPES:
        enriched["threatDetected"] = True
        for key in ("url", "origin", "redirectTo"):
            if enriched.get(key):
                enriched[key] = defang(enriched[key])
    return enriched


def build_report(
    verdict: DetectionVerdict,
    action: ProtectiveAction,
    settings: ProtectionSettings,
    engine_version: str = "",
) -> dict:
    """Payload for the external reporting collaborator.

    Threat reports have their URLs defanged. A legitimate login report keeps
    the URL as is and carries no severity.
    """
    report_type = action.report_type or action.event_type
    if report_type == LEGITIMATE_REPORT_TYPE:
        report = {
            "type": report_type,
            "url": verdict.url,
            "origin": url_origin(verdict.url),
            "legitimate": True,
            "timestamp": verdict.timestamp.isoformat(),
        }
        if engine_version:
            report["extensionVersion"] = engine_version
        if settings.cipp_tenant_id:
            report["tenantId"] = settings.cipp_tenant_id
        if verdict.client_id:
            report["clientId"] = verdict.client_id
        return report

    report = {
        "type": report_type,
        "url": defang(verdict.url),
        "origin": defang(url_origin(verdict.url)),
        "reason": verdict.reason,
        "severity": verdict.severity or "medium",
        "legitimate": False,
        "timestamp": verdict.timestamp.isoformat(),
    }
    if engine_version:
        report["extensionVersion"] = engine_version
    if settings.cipp_tenant_id:
        report["tenantId"] = settings.cipp_tenant_id
    for key, value in (
        ("score", verdict.score),
        ("threshold", verdict.threshold),
        ("rule", verdict.rule_id),
        ("clientId", verdict.client_id),
        ("redirectTo", defang(redirect_hostname(verdict.url)) or None),
    ):
        if value is not None:
            report[key] = value
    if verdict.rogue_app:
        report["appName"] = verdict.rogue_app.get("appName") or "Unknown"
    if verdict.threats:
        report["phishingIndicators"] = [t.id for t in verdict.threats]
    return report


class ProtectionEventLog:
    """Bounded in-memory log of protection events for one page."""

    def __init__(self, max_events: int = 1000):
        self._events: deque[dict] = deque(maxlen=max_events)

    def record(self, event: dict) -> dict:
        enriched = enrich_event(event)
        self._events.append(enriched)
        if enriched.get("threatDetected"):
            logger.warning(
                "Protection event %s: %s (%s)", enriched["type"], enriched.get("url"), enriched.get("reason")
            )
        else:
            logger.info("Protection event %s: %s", enriched.get("type"), enriched.get("url"))
        return enriched

    def recent(self, limit: int = 50) -> list[dict]:
        return list(self._events)[-limit:]

    def __len__(self) -> int:
        return len(self._events)
