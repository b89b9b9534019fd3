"""Domain and URL normalization utilities."""

from __future__ import annotations

from typing import Iterable, Optional
from urllib.parse import parse_qs, unquote, urlparse

import tldextract

# Bundled public suffix snapshot only; never fetch the list at runtime.
_extract = tldextract.TLDExtract(suffix_list_urls=())


def canonicalize_domain(value: str) -> str:
    """
    Normalize a domain/URL to a canonical host key.

    - Lowercase
    - Strip leading "www."
    - Preserve port (if present)
    - Ignore path/query/fragment
    """
    raw = (value or "").strip()
    if not raw:
        return ""

    candidate = raw if "://" in raw else f"https://{raw}"
    try:
        parsed = urlparse(candidate)
        host = (parsed.hostname or raw.split("/")[0]).strip().lower().strip(".")
        port = parsed.port
    except ValueError:
        return ""
    if not host:
        return ""

    if host.startswith("www.") and len(host) > 4:
        host = host[4:]

    if port:
        host = f"{host}:{port}"

    return host


def _strip_port(host: str) -> str:
    if not host:
        return ""
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def registered_domain(value: str) -> str:
    """Return the registrable domain for a host or URL (best-effort)."""
    host = canonicalize_domain(value)
    if not host:
        return ""
    host = _strip_port(host)
    extracted = _extract(host)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}".lower()
    return host.lower()


def domain_in_set(domain: str, domains: Iterable[str], include_subdomains: bool = True) -> bool:
    """Check if a host equals, or is a subdomain of, any entry in ``domains``.

    With ``include_subdomains=False`` only the entry itself (or its "www."
    form) matches.
    """
    entries = {d for d in domains if d}
    if not entries:
        return False
    host = _strip_port(canonicalize_domain(domain))
    if not host:
        return False
    if host in entries:
        return True
    if not include_subdomains:
        return False
    if registered_domain(host) in entries:
        return True
    return any(host.endswith(f".{entry}") for entry in entries)


def parse_http_url(url: str):
    """Parse ``url`` and return the result only for absolute http(s) URLs."""
    try:
        parsed = urlparse((url or "").strip())
        # Accessing .port validates it; invalid ports raise ValueError.
        parsed.port
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
        return None
    return parsed


def url_origin(url: str) -> str:
    """Return ``scheme://host[:port]`` in lowercase, or "" for unparsable URLs."""
    parsed = parse_http_url(url)
    if parsed is None:
        return ""
    origin = f"{parsed.scheme.lower()}://{parsed.hostname.lower()}"
    if parsed.port:
        origin = f"{origin}:{parsed.port}"
    return origin


def url_hostname(url: str) -> str:
    """Return the lowercase hostname of an http(s) URL, or ""."""
    parsed = parse_http_url(url)
    if parsed is None:
        return ""
    return parsed.hostname.lower()


def query_param(url: str, name: str) -> Optional[str]:
    """Return the first value of a query parameter, or None."""
    try:
        values = parse_qs(urlparse(url or "").query).get(name)
    except ValueError:
        return None
    if not values:
        return None
    value = values[0].strip()
    return value or None


def redirect_hostname(url: str) -> Optional[str]:
    """Return the host named by the ``redirect_uri`` query parameter.

    Falls back to the first 100 characters of the raw value when it is not a
    parseable URL.
    """
    raw = query_param(url, "redirect_uri")
    if not raw:
        return None
    decoded = unquote(raw)
    host = url_hostname(decoded)
    if host:
        return host
    return decoded[:100] + "..." if len(decoded) > 100 else decoded
