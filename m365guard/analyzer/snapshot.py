"""Rendered page snapshot consumed by the analyzer stages.

A ``PageSnapshot`` bundles what the engine is allowed to look at: the
serialized markup, the visible text, accessible stylesheet text, loaded
resource URLs, the referrer and response headers, plus CSS-selector
queries over the DOM. How the snapshot was obtained is the host's concern
(see ``capture.py`` for a Playwright-based capture).
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import Iterable, Mapping, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from bs4.element import PreformattedString

_HIDDEN_TEXT_PARENTS = frozenset({"script", "style", "noscript", "template", "head", "title"})

RESOURCE_SELECTOR = "[src], link[rel~=stylesheet][href]"


@dataclass(frozen=True)
class FormInfo:
    """A form element with its resolved submission target."""

    action: str
    has_password_field: bool
    has_email_field: bool
    element: Tag

    @property
    def has_credential_field(self) -> bool:
        return self.has_password_field or self.has_email_field


class PageSnapshot:
    """Read-only view of one rendered page."""

    def __init__(
        self,
        url: str,
        html: str,
        *,
        stylesheets: Iterable[str] = (),
        resources: Iterable[str] = (),
        referrer: str = "",
        headers: Optional[Mapping[str, str]] = None,
    ):
        self.url = url or ""
        self.html = html or ""
        self.referrer = referrer or ""
        self.headers = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        self._extra_stylesheets = tuple(s for s in stylesheets if s)
        self._extra_resources = tuple(r for r in resources if r)

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html, "html.parser")

    @cached_property
    def text(self) -> str:
        """Visible text, excluding script/style content and comments."""
        parts = []
        for node in self.soup.find_all(string=True):
            if isinstance(node, PreformattedString):
                continue
            parent = node.parent
            if parent is not None and parent.name in _HIDDEN_TEXT_PARENTS:
                continue
            value = node.strip()
            if value:
                parts.append(value)
        return " ".join(parts)

    @cached_property
    def stylesheets(self) -> tuple[str, ...]:
        inline = tuple("".join(str(s) for s in tag.contents) for tag in self.soup.find_all("style"))
        return inline + self._extra_stylesheets

    @cached_property
    def css_text(self) -> str:
        return "\n".join(self.stylesheets)

    @cached_property
    def resources(self) -> tuple[str, ...]:
        """Absolute URLs of loaded scripts, images, frames and stylesheets."""
        seen: dict[str, None] = {}
        for node in self.soup.select(RESOURCE_SELECTOR):
            raw = node.get("src") or node.get("href")
            if not raw or not isinstance(raw, str):
                continue
            seen.setdefault(self.resolve_url(raw.strip()), None)
        for raw in self._extra_resources:
            seen.setdefault(raw, None)
        return tuple(seen)

    @property
    def content_security_policy(self) -> str:
        header = self.headers.get("content-security-policy", "")
        if header:
            return header
        meta = self.soup.find("meta", attrs={"http-equiv": lambda v: v and v.lower() == "content-security-policy"})
        return str(meta.get("content", "")) if meta else ""

    def resolve_url(self, value: str) -> str:
        if not value:
            return self.url
        try:
            return urljoin(self.url, value)
        except ValueError:
            return value

    def query(self, selector: str) -> list[Tag]:
        """Run a CSS selector over the DOM.

        Raises ``soupsieve.SelectorSyntaxError`` for malformed selectors;
        callers decide how that failure is treated.
        """
        return self.soup.select(selector)

    def exists(self, selector: str) -> bool:
        return self.soup.select_one(selector) is not None

    def forms(self, selector: str = "form") -> list[FormInfo]:
        result: list[FormInfo] = []
        for form in self.query(selector or "form"):
            if form.name != "form":
                continue
            action = (form.get("action") or "").strip()
            result.append(FormInfo(
                # An empty action submits to the page itself.
                action=self.resolve_url(action) if action else self.url,
                has_password_field=form.select_one('input[type="password" i]') is not None,
                has_email_field=form.select_one('input[type="email" i]') is not None,
                element=form,
            ))
        return result

    @cached_property
    def has_credential_inputs(self) -> bool:
        return self.exists('input[type="password" i], input[type="email" i]')

    def __repr__(self) -> str:
        return f"PageSnapshot(url={self.url!r}, html={len(self.html)} chars)"
