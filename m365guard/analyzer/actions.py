"""Map a verdict to the protective action the host must carry out."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config import ProtectionSettings
from ..constants import LEGITIMATE_REPORT_TYPE, ActionKind, Verdict
from .detector_models import DetectionVerdict


@dataclass(frozen=True)
class ProtectiveAction:
    kind: ActionKind = ActionKind.NONE
    dismissible: bool = True
    disable_credentials: bool = False
    disable_forms: bool = False
    continue_monitoring: bool = False
    report: bool = False
    event_type: str = "page_scanned"
    report_type: Optional[str] = None
    title: str = ""

    @property
    def shows_banner(self) -> bool:
        return self.kind == ActionKind.WARN

    def to_dict(self) -> dict:
        return {
            "kind": str(self.kind),
            "dismissible": self.dismissible,
            "disableCredentials": self.disable_credentials,
            "disableForms": self.disable_forms,
            "continueMonitoring": self.continue_monitoring,
            "report": self.report,
            "eventType": self.event_type,
            "reportType": self.report_type,
            "title": self.title,
        }


class ActionPolicy:
    """Turns verdicts into actions. Never downgrades a threat to a badge."""

    def decide(self, verdict: DetectionVerdict, settings: ProtectionSettings) -> ProtectiveAction:
        v = verdict.verdict

        if v == Verdict.BLOCKED and settings.protection_enabled:
            return ProtectiveAction(
                kind=ActionKind.BLOCK,
                dismissible=False,
                disable_credentials=True,
                disable_forms=True,
                continue_monitoring=False,
                report=True,
                event_type="threat_blocked",
                report_type="phishing_blocked",
                title="Phishing page blocked",
            )

        if v == Verdict.BLOCKED:
            return ProtectiveAction(
                kind=ActionKind.WARN,
                continue_monitoring=True,
                report=True,
                event_type="threat_detected_no_action",
                report_type="phishing_blocked",
                title="Threat detected (blocking disabled)",
            )

        if v == Verdict.ROGUE_APP:
            return ProtectiveAction(
                kind=ActionKind.WARN,
                continue_monitoring=True,
                report=True,
                event_type="threat_detected",
                report_type="critical_rogue_app_detected",
                title="Rogue OAuth Application Detected",
            )

        if v == Verdict.SUSPICIOUS:
            return ProtectiveAction(
                kind=ActionKind.WARN,
                continue_monitoring=True,
                report=True,
                event_type="threat_detected" if settings.protection_enabled else "threat_detected_no_action",
                report_type="suspicious_logon_detected",
                title="Suspicious Microsoft 365 login page",
            )

        if v == Verdict.TRUSTED:
            return ProtectiveAction(
                kind=ActionKind.BADGE if settings.badge_enabled else ActionKind.NONE,
                report=True,
                event_type="legitimate_access",
                report_type=LEGITIMATE_REPORT_TYPE,
                title="Verified Microsoft login page" if settings.badge_enabled else "",
            )

        return ProtectiveAction(kind=ActionKind.NONE, event_type="page_scanned")
