"""Build page snapshots from a live Playwright page."""

from __future__ import annotations

import logging
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response

from .snapshot import PageSnapshot

logger = logging.getLogger(__name__)

# Stylesheets from other origins throw on cssRules access; those are skipped.
_STYLESHEETS_JS = """
() => {
    const sheets = [];
    for (const sheet of Array.from(document.styleSheets)) {
        try {
            const rules = Array.from(sheet.cssRules || []).map(r => r.cssText);
            sheets.push(rules.join("\\n"));
        } catch (e) {}
    }
    return sheets;
}
"""

_RESOURCES_JS = """
() => performance.getEntriesByType("resource").map(e => e.name)
"""


async def _evaluate(page: Page, script: str, default):
    try:
        return await page.evaluate(script)
    except PlaywrightError as exc:
        logger.debug("Snapshot script failed on %s: %s", page.url, exc)
        return default


async def capture_snapshot(page: Page, response: Optional[Response] = None) -> PageSnapshot:
    """Capture markup, stylesheets, resources, referrer and headers from ``page``.

    ``response`` is the main document response from ``page.goto``; its
    headers feed the CSP legitimacy check.
    """
    html = await page.content()
    stylesheets = await _evaluate(page, _STYLESHEETS_JS, [])
    resources = await _evaluate(page, _RESOURCES_JS, [])
    referrer = await _evaluate(page, "() => document.referrer || ''", "")

    headers: dict[str, str] = {}
    if response is not None:
        try:
            headers = await response.all_headers()
        except PlaywrightError as exc:
            logger.debug("Could not read response headers for %s: %s", page.url, exc)

    return PageSnapshot(
        page.url,
        html,
        stylesheets=[s for s in stylesheets if isinstance(s, str)],
        resources=[r for r in resources if isinstance(r, str)],
        referrer=referrer if isinstance(referrer, str) else "",
        headers=headers,
    )


class PageCapture:
    """Snapshot source for a ``ProtectionSession`` bound to one Playwright page."""

    def __init__(self, page: Page, response: Optional[Response] = None):
        self.page = page
        self.response = response

    async def __call__(self) -> PageSnapshot:
        return await capture_snapshot(self.page, self.response)
