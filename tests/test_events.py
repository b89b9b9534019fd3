"""Tests for protection events, reports and defanging."""

from m365guard.analyzer.actions import ActionPolicy
from m365guard.analyzer.detector_models import DetectionVerdict, Threat
from m365guard.config import ProtectionSettings
from m365guard.constants import Severity, Verdict
from m365guard.reporter.events import (
    ProtectionEventLog,
    build_protection_event,
    build_report,
    defang,
    enrich_event,
)

PHISH_URL = "https://evil.example:8443/login?redirect_uri=https%3A%2F%2Fcollect.example%2Fcb"


def _verdict(verdict: Verdict = Verdict.BLOCKED, **kwargs) -> DetectionVerdict:
    kwargs.setdefault("url", PHISH_URL)
    return DetectionVerdict(verdict=verdict, reason="test", **kwargs)


class TestDefang:
    def test_no_clickable_scheme(self):
        result = defang("https://evil.example:8443/x")
        assert "://" not in result
        assert result == "https[:]//evil.example[:]8443/x"

    def test_idempotent(self):
        once = defang(PHISH_URL)
        assert defang(once) == once

    def test_empty(self):
        assert defang(None) == ""
        assert defang("") == ""


class TestEvents:
    def test_threat_event_is_defanged(self):
        settings = ProtectionSettings()
        verdict = _verdict(severity="critical", rule_id="form_action_validation")
        action = ActionPolicy().decide(verdict, settings)
        event = enrich_event(build_protection_event(verdict, action, settings))
        assert event["type"] == "threat_blocked"
        assert event["action"] == "blocked"
        assert event["threatDetected"] is True
        assert event["rule"] == "form_action_validation"
        assert event["redirectTo"] == "collect.example"
        for key in ("url", "origin"):
            assert "://" not in event[key]

    def test_legitimate_event_is_not_defanged(self):
        settings = ProtectionSettings()
        url = "https://login.microsoftonline.com/common"
        verdict = _verdict(Verdict.TRUSTED, url=url)
        event = enrich_event(build_protection_event(verdict, ActionPolicy().decide(verdict, settings), settings))
        assert event["type"] == "legitimate_access"
        assert event["url"] == url
        assert event["action"] == "allowed"
        assert event["threatLevel"] == "none"
        assert "threatDetected" not in event

    def test_unknown_event_type_defaults(self):
        event = enrich_event({"type": "something_else"})
        assert event["action"] == "logged"
        assert event["threatLevel"] == "info"
        assert event["timestamp"]


class TestReport:
    def test_fields(self):
        settings = ProtectionSettings(cipp_tenant_id="contoso.onmicrosoft.com")
        verdict = _verdict(
            Verdict.SUSPICIOUS,
            severity="medium",
            score=80.0,
            threshold=85.0,
            threats=[Threat(id="phi_urgent", type="phishing_indicator", description="", severity=Severity.MEDIUM)],
        )
        action = ActionPolicy().decide(verdict, settings)
        report = build_report(verdict, action, settings, engine_version="1.0.0")
        assert report["type"] == "suspicious_logon_detected"
        assert "://" not in report["url"]
        assert report["origin"] == "https[:]//evil.example[:]8443"
        assert report["redirectTo"] == "collect.example"
        assert report["tenantId"] == "contoso.onmicrosoft.com"
        assert report["extensionVersion"] == "1.0.0"
        assert report["score"] == 80.0
        assert report["phishingIndicators"] == ["phi_urgent"]
        assert report["legitimate"] is False

    def test_rogue_app_name(self):
        settings = ProtectionSettings()
        verdict = _verdict(Verdict.ROGUE_APP, client_id="abc", rogue_app={"appName": "Mail Sync Pro"})
        report = build_report(verdict, ActionPolicy().decide(verdict, settings), settings)
        assert report["appName"] == "Mail Sync Pro"
        assert report["clientId"] == "abc"
        assert "extensionVersion" not in report

    def test_trusted_login_report_is_not_defanged(self):
        url = "https://login.microsoftonline.com/common/oauth2/authorize?client_id=abc"
        settings = ProtectionSettings()
        verdict = _verdict(Verdict.TRUSTED, url=url, client_id="abc", score=100.0)
        report = build_report(verdict, ActionPolicy().decide(verdict, settings), settings)
        assert report["type"] == "microsoft_logon_detected"
        assert report["url"] == url
        assert report["origin"] == "https://login.microsoftonline.com"
        assert report["legitimate"] is True
        assert report["clientId"] == "abc"
        assert "severity" not in report


def test_event_log_is_bounded():
    log = ProtectionEventLog(max_events=3)
    for n in range(5):
        log.record({"type": "page_scanned", "url": f"https://x.example/{n}"})
    assert len(log) == 3
    assert [e["url"] for e in log.recent(2)] == ["https://x.example/3", "https://x.example/4"]
