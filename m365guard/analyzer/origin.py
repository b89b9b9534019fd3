"""Classify a page origin against the rule document's domain patterns."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import ClassifierError
from ..utils.domains import parse_http_url, url_origin
from .patterns import matches_any
from .rule_models import RuleDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OriginClassification:
    is_trusted_login: bool = False
    is_microsoft_domain: bool = False
    is_excluded_domain: bool = False
    origin: str = ""
    hostname: str = ""

    def to_dict(self) -> dict:
        return {
            "isTrustedLogin": self.is_trusted_login,
            "isMicrosoftDomain": self.is_microsoft_domain,
            "isExcludedDomain": self.is_excluded_domain,
        }


UNCLASSIFIED = OriginClassification()


def _classify(url: str, rules: RuleDocument) -> OriginClassification:
    parsed = parse_http_url(url)
    if parsed is None:
        raise ClassifierError(f"not an absolute http(s) URL: {url[:100]!r}")
    origin = url_origin(url)
    hostname = parsed.hostname.lower()

    is_trusted_login = matches_any(origin, rules.trusted_login_patterns)
    is_microsoft_domain = not is_trusted_login and matches_any(origin, rules.microsoft_domain_patterns)
    is_excluded_domain = (
        not is_trusted_login
        and not is_microsoft_domain
        and matches_any(origin, rules.exclusion_system.domain_patterns)
    )
    return OriginClassification(
        is_trusted_login=is_trusted_login,
        is_microsoft_domain=is_microsoft_domain,
        is_excluded_domain=is_excluded_domain,
        origin=origin,
        hostname=hostname,
    )


def classify_origin(url: str, rules: RuleDocument) -> OriginClassification:
    """Classify ``url``; any failure yields an all-false classification."""
    try:
        return _classify(url, rules)
    except ClassifierError as exc:
        logger.info("Origin not classified: %s", exc)
    except Exception as exc:
        logger.error("Origin classification failed for %s: %s", (url or "")[:100], exc)
    return UNCLASSIFIED
