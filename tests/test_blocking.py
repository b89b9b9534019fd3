"""Tests for structural blocking rules."""

from m365guard.analyzer.blocking import BlockingRuleEvaluator, evaluate_blocking_rules
from m365guard.analyzer.rule_models import BlockingRule, freeze_mapping
from m365guard.analyzer.snapshot import PageSnapshot

from conftest import LOOKALIKE_HTML, PROXY_HTML


def _rule(rule_id: str, rule_type: str, **condition) -> BlockingRule:
    return BlockingRule(id=rule_id, type=rule_type, condition=freeze_mapping(condition))


FORM_RULE = _rule("form_action_validation", "form_action_validation", action_must_contain="login.microsoftonline.com")


class TestFormActionValidation:
    def test_foreign_form_action_blocks(self):
        snapshot = PageSnapshot("https://evil-lookalike.example/login", LOOKALIKE_HTML)
        result = evaluate_blocking_rules([FORM_RULE], snapshot)
        assert result.should_block
        assert result.rule_id == "form_action_validation"
        assert "https://evil-lookalike.example/submit" in result.reason
        assert "login.microsoftonline.com" in result.reason

    def test_microsoft_form_action_passes(self):
        snapshot = PageSnapshot("https://proxy.example/", PROXY_HTML)
        assert not evaluate_blocking_rules([FORM_RULE], snapshot).should_block

    def test_legacy_condition_key(self):
        rule = _rule("legacy", "form_action_validation", action_must_not_contain="login.microsoftonline.com")
        snapshot = PageSnapshot("https://evil-lookalike.example/login", LOOKALIKE_HTML)
        assert evaluate_blocking_rules([rule], snapshot).should_block

    def test_empty_action_posts_to_page_itself(self):
        snapshot = PageSnapshot("https://evil.example/login", "<form><input type=password></form>")
        result = evaluate_blocking_rules([FORM_RULE], snapshot)
        assert result.should_block
        assert "https://evil.example/login" in result.reason


class TestResourceValidation:
    RULE = _rule(
        "customcss_origin",
        "resource_validation",
        resource_pattern="customcss",
        required_origin="https://aadcdn.msftauthimages.net/",
    )

    def test_foreign_customcss_blocks(self):
        snapshot = PageSnapshot(
            "https://evil.example/",
            '<link rel="stylesheet" href="https://evil.example/tenant/customcss.css">',
        )
        result = evaluate_blocking_rules([self.RULE], snapshot)
        assert result.should_block
        assert "customcss.css" in result.reason

    def test_microsoft_customcss_passes(self):
        snapshot = PageSnapshot(
            "https://evil.example/",
            "",
            resources=["https://aadcdn.msftauthimages.net/tenant/customcss.css"],
        )
        assert not evaluate_blocking_rules([self.RULE], snapshot).should_block

    def test_empty_marker_is_skipped(self):
        rule = _rule("no_marker", "resource_validation", required_origin="https://cdn.example/")
        snapshot = PageSnapshot("https://evil.example/", "", resources=["https://other.example/a.js"])
        assert not evaluate_blocking_rules([rule], snapshot).should_block


class TestCssSpoofing:
    RULE = _rule(
        "css_spoofing",
        "css_spoofing_validation",
        css_indicators=["Segoe UI", "#0067b8", "lightbox-cover"],
        minimum_matches=2,
    )

    def test_styled_foreign_credential_form_blocks(self):
        snapshot = PageSnapshot(
            "https://evil.example/",
            '<form action="/collect"><input type="password"></form>',
            stylesheets=['body { font-family: "Segoe UI"; color: #0067b8 }'],
        )
        result = evaluate_blocking_rules([self.RULE], snapshot)
        assert result.should_block
        assert "2 CSS indicators" in result.reason

    def test_too_few_indicators_passes(self):
        snapshot = PageSnapshot(
            "https://evil.example/",
            '<form action="/collect"><input type="password"></form>',
            stylesheets=['body { font-family: "Segoe UI" }'],
        )
        assert not evaluate_blocking_rules([self.RULE], snapshot).should_block

    def test_form_without_credentials_passes(self):
        snapshot = PageSnapshot(
            "https://evil.example/",
            '<form action="/search"><input type="text" name="q"></form>',
            stylesheets=['body { font-family: "Segoe UI"; color: #0067b8 }'],
        )
        assert not evaluate_blocking_rules([self.RULE], snapshot).should_block


class TestEvaluator:
    def test_first_firing_rule_wins(self):
        snapshot = PageSnapshot(
            "https://evil-lookalike.example/login",
            LOOKALIKE_HTML + '<link rel="stylesheet" href="/customcss.css">',
        )
        second = _rule("customcss", "resource_validation", resource_pattern="customcss", required_origin="https://cdn/")
        result = evaluate_blocking_rules([FORM_RULE, second], snapshot)
        assert result.rule_id == "form_action_validation"

    def test_unknown_rule_type_is_skipped(self):
        snapshot = PageSnapshot("https://proxy.example/", PROXY_HTML)
        result = evaluate_blocking_rules([_rule("odd", "dns_validation")], snapshot)
        assert not result.should_block

    def test_unevaluable_rule_blocks_for_safety(self):
        rule = _rule("broken", "form_action_validation", form_selector="form[", action_must_contain="x")
        snapshot = PageSnapshot("https://proxy.example/", PROXY_HTML)
        result = evaluate_blocking_rules([rule], snapshot)
        assert result.should_block
        assert result.rule_id == "broken"
        assert "blocking for safety" in result.reason
        assert result.error

    def test_custom_checks(self):
        class AlwaysBlock:
            type = "always"

            def apply(self, condition, context):
                return f"always blocks {context.url}"

        evaluator = BlockingRuleEvaluator(checks=[AlwaysBlock()])
        result = evaluator.evaluate([_rule("a", "always")], PageSnapshot("https://x.test/", ""))
        assert result.reason == "always blocks https://x.test/"

    def test_no_rules_never_blocks(self):
        assert not evaluate_blocking_rules([], PageSnapshot("https://x.test/", LOOKALIKE_HTML)).should_block
