"""Rule document loading, parsing and caching."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import httpx
import yaml

from ..constants import Severity
from ..errors import RuleLoadError
from ..host import RuleSource
from .patterns import validate_pattern
from .rule_models import (
    BLOCKING_RULE_TYPES,
    DEFAULT_LEGITIMATE_THRESHOLD,
    ELEMENT_TYPES,
    LEGITIMACY_RULE_TYPES,
    BlockingRule,
    DetectionRequirements,
    Element,
    ExclusionSystem,
    Indicator,
    LegitimacyRule,
    RuleDocument,
    ThresholdSet,
    freeze_mapping,
)

logger = logging.getLogger(__name__)

RawDocument = Union[str, bytes, dict]


class FileRuleSource:
    """Reads the rule document from a local JSON or YAML file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def name(self) -> str:
        return str(self.path)

    async def fetch(self) -> str:
        return await asyncio.to_thread(self.path.read_text, encoding="utf-8")


class HttpRuleSource:
    """Downloads the rule document over HTTP(S)."""

    user_agent: str = "m365guard/1.0"

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    @property
    def name(self) -> str:
        return self.url

    async def fetch(self) -> str:
        if self._client is not None:
            resp = await self._client.get(self.url)
            resp.raise_for_status()
            return resp.text
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            headers={"User-Agent": self.user_agent, "Cache-Control": "no-cache"},
            follow_redirects=True,
        ) as client:
            resp = await client.get(self.url)
            resp.raise_for_status()
            return resp.text


class StaticRuleSource:
    """Serves an already-parsed document (embedded rules, tests)."""

    name = "static"

    def __init__(self, data: RawDocument):
        self.data = data

    async def fetch(self) -> RawDocument:
        return self.data


def decode_rule_document(raw: RawDocument, source: str = "") -> dict:
    """Turn fetched content into the raw mapping, raising ``RuleLoadError``."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RuleLoadError(f"not valid UTF-8: {exc}", source) from exc
    if not isinstance(raw, str) or not raw.strip():
        raise RuleLoadError("empty rule document", source)

    text = raw.strip()
    try:
        if text.startswith("{"):
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise RuleLoadError(f"unparseable rule document: {exc}", source) from exc

    if not isinstance(data, dict):
        raise RuleLoadError("top level of the rule document must be an object", source)
    return data


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    return tuple(str(v) for v in _as_list(value) if isinstance(v, str) and v)


def _number(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_elements(items: Any, default_category: str) -> tuple[Element, ...]:
    elements: list[Element] = []
    for index, item in enumerate(_as_list(items)):
        if not isinstance(item, dict):
            logger.warning("Skipping malformed %s element #%d", default_category, index)
            continue
        element_id = str(item.get("id") or f"{default_category}_{index}")
        element_type = item.get("type", "source_content")
        if element_type not in ELEMENT_TYPES:
            logger.warning("Skipping element %s: unknown type %r", element_id, element_type)
            continue
        patterns = _str_tuple(item.get("patterns")) or _str_tuple(item.get("pattern"))
        if not patterns:
            logger.warning("Skipping element %s: no patterns", element_id)
            continue
        category = str(item.get("category") or default_category).lower()
        if category not in ("primary", "secondary"):
            category = default_category
        elements.append(Element(
            id=element_id,
            category=category,
            type=element_type,
            patterns=patterns,
            weight=max(0.0, _number(item.get("weight"), 1.0)),
            flags=item.get("flags"),
            description=str(item.get("description") or ""),
        ))
    return tuple(elements)


def _parse_thresholds(data: Any) -> ThresholdSet:
    raw = _as_dict(data)
    defaults = ThresholdSet()
    return ThresholdSet(
        minimum_primary_elements=int(_number(raw.get("minimum_primary_elements"), defaults.minimum_primary_elements)),
        minimum_total_weight=_number(raw.get("minimum_total_weight"), defaults.minimum_total_weight),
        minimum_elements_overall=int(_number(raw.get("minimum_elements_overall"), defaults.minimum_elements_overall)),
        minimum_secondary_only_weight=_number(
            raw.get("minimum_secondary_only_weight"), defaults.minimum_secondary_only_weight
        ),
        minimum_secondary_only_elements=int(_number(
            raw.get("minimum_secondary_only_elements"), defaults.minimum_secondary_only_elements
        )),
    )


def _parse_indicators(items: Any) -> tuple[Indicator, ...]:
    indicators: list[Indicator] = []
    seen: set[str] = set()
    for index, item in enumerate(_as_list(items)):
        if not isinstance(item, dict):
            logger.warning("Skipping malformed phishing indicator #%d", index)
            continue
        indicator_id = str(item.get("id") or f"indicator_{index}")
        pattern = item.get("pattern")
        flags = item.get("flags") or "i"
        error = validate_pattern(pattern, flags)
        if error:
            logger.warning("Skipping phishing indicator %s: invalid pattern (%s)", indicator_id, error)
            continue
        if indicator_id in seen:
            logger.warning("Duplicate phishing indicator id %s; keeping the first", indicator_id)
            continue
        seen.add(indicator_id)
        action = str(item.get("action") or "warn").lower()
        indicators.append(Indicator(
            id=indicator_id,
            pattern=pattern,
            flags=flags,
            category=str(item.get("category") or "general"),
            severity=Severity.from_string(item.get("severity")),
            confidence=min(1.0, max(0.0, _number(item.get("confidence"), 0.5))),
            description=str(item.get("description") or indicator_id),
            action=action if action in ("warn", "block") else "warn",
            additional_checks=_str_tuple(item.get("additional_checks")),
            context_required=_str_tuple(item.get("context_required")),
        ))
    return tuple(indicators)


def _parse_blocking_rules(items: Any) -> tuple[BlockingRule, ...]:
    rules: list[BlockingRule] = []
    for index, item in enumerate(_as_list(items)):
        if not isinstance(item, dict) or not item.get("type"):
            logger.warning("Skipping malformed blocking rule #%d", index)
            continue
        rules.append(BlockingRule(
            id=str(item.get("id") or f"blocking_rule_{index}"),
            type=str(item["type"]),
            condition=freeze_mapping(_as_dict(item.get("condition"))),
            severity=str(item.get("severity") or "critical").lower(),
            description=str(item.get("description") or ""),
        ))
    return tuple(rules)


def _parse_legitimacy_rules(items: Any) -> tuple[LegitimacyRule, ...]:
    rules: list[LegitimacyRule] = []
    for index, item in enumerate(_as_list(items)):
        if not isinstance(item, dict) or not item.get("type"):
            logger.warning("Skipping malformed legitimacy rule #%d", index)
            continue
        rules.append(LegitimacyRule(
            id=str(item.get("id") or f"rule_{index}"),
            type=str(item["type"]),
            condition=freeze_mapping(_as_dict(item.get("condition"))),
            weight=_number(item.get("weight"), 0.0),
            description=str(item.get("description") or ""),
        ))
    return tuple(rules)


def _parse_exclusions(data: Any) -> ExclusionSystem:
    raw = _as_dict(data)
    contexts = _as_dict(raw.get("context_indicators"))
    platforms = raw.get("major_platform_domains")
    return ExclusionSystem(
        domain_patterns=_str_tuple(raw.get("domain_patterns")),
        legitimate_contexts=_str_tuple(contexts.get("legitimate_contexts")),
        suspicious_contexts=_str_tuple(contexts.get("suspicious_contexts")),
        legitimate_sso_patterns=_str_tuple(contexts.get("legitimate_sso_patterns")),
        sso_exempt_indicators=frozenset(_str_tuple(contexts.get("sso_exempt_indicators"))),
        major_platform_domains=(
            tuple(d.lower() for d in _str_tuple(platforms)) if isinstance(platforms, list) else None
        ),
    )


def parse_rule_document(data: dict) -> RuleDocument:
    """Build a ``RuleDocument`` from the raw mapping.

    Only the top-level shape is strict. Absent arrays become empty and
    malformed entries are dropped with a warning.
    """
    if not isinstance(data, dict):
        raise RuleLoadError("top level of the rule document must be an object")

    requirements = _as_dict(data.get("m365_detection_requirements"))
    thresholds = _as_dict(data.get("thresholds"))

    return RuleDocument(
        trusted_login_patterns=_str_tuple(data.get("trusted_login_patterns")),
        microsoft_domain_patterns=_str_tuple(data.get("microsoft_domain_patterns")),
        m365_detection_requirements=DetectionRequirements(
            primary_elements=_parse_elements(requirements.get("primary_elements"), "primary"),
            secondary_elements=_parse_elements(requirements.get("secondary_elements"), "secondary"),
            thresholds=_parse_thresholds(requirements.get("detection_thresholds")),
        ),
        blocking_rules=_parse_blocking_rules(data.get("blocking_rules")),
        phishing_indicators=_parse_indicators(data.get("phishing_indicators")),
        exclusion_system=_parse_exclusions(data.get("exclusion_system")),
        rules=_parse_legitimacy_rules(data.get("rules")),
        legitimate_threshold=_number(thresholds.get("legitimate"), DEFAULT_LEGITIMATE_THRESHOLD),
        version=str(data.get("version") or "1.0"),
        last_updated=data.get("last_updated") or data.get("lastUpdated"),
    )


@dataclass
class RuleIssue:
    """A problem found while validating a rule document."""

    category: str
    rule_id: str
    message: str

    def __str__(self) -> str:
        return f"[{self.category}] {self.rule_id}: {self.message}"


def validate_rule_document(data: dict) -> list[RuleIssue]:
    """Report rule authoring problems without failing the load."""
    issues: list[RuleIssue] = []

    def _check_pattern(category: str, rule_id: str, pattern: Any, flags: Any = None) -> None:
        error = validate_pattern(pattern, flags)
        if error:
            issues.append(RuleIssue(category, rule_id, f"invalid pattern: {error}"))

    for key in ("trusted_login_patterns", "microsoft_domain_patterns"):
        for pattern in _as_list(data.get(key)):
            _check_pattern(key, str(pattern), pattern)
    for pattern in _as_list(_as_dict(data.get("exclusion_system")).get("domain_patterns")):
        _check_pattern("exclusion_system", str(pattern), pattern)

    requirements = _as_dict(data.get("m365_detection_requirements"))
    for key in ("primary_elements", "secondary_elements"):
        for index, item in enumerate(_as_list(requirements.get(key))):
            item = _as_dict(item)
            element_id = str(item.get("id") or f"#{index}")
            if not item.get("id"):
                issues.append(RuleIssue(key, element_id, "missing id"))
            if item.get("type", "source_content") not in ELEMENT_TYPES:
                issues.append(RuleIssue(key, element_id, f"unknown type {item.get('type')!r}"))
            for pattern in _str_tuple(item.get("patterns")) or _str_tuple(item.get("pattern")) or (None,):
                _check_pattern(key, element_id, pattern, item.get("flags"))

    for index, item in enumerate(_as_list(data.get("phishing_indicators"))):
        item = _as_dict(item)
        indicator_id = str(item.get("id") or f"#{index}")
        if not item.get("id"):
            issues.append(RuleIssue("phishing_indicators", indicator_id, "missing id"))
        if not item.get("description"):
            issues.append(RuleIssue("phishing_indicators", indicator_id, "missing description"))
        _check_pattern("phishing_indicators", indicator_id, item.get("pattern"), item.get("flags"))
        confidence = item.get("confidence")
        if confidence is not None and not 0 <= _number(confidence, -1) <= 1:
            issues.append(RuleIssue("phishing_indicators", indicator_id, "confidence outside [0, 1]"))

    for category, known in (("blocking_rules", BLOCKING_RULE_TYPES), ("rules", LEGITIMACY_RULE_TYPES)):
        for index, item in enumerate(_as_list(data.get(category))):
            item = _as_dict(item)
            rule_id = str(item.get("id") or f"#{index}")
            if not item.get("id"):
                issues.append(RuleIssue(category, rule_id, "missing id"))
            if not item.get("description"):
                issues.append(RuleIssue(category, rule_id, "missing description"))
            if item.get("type") not in known:
                issues.append(RuleIssue(category, rule_id, f"unknown type {item.get('type')!r}"))

    return issues


class RuleStore:
    """Loads the rule document once and serves the cached copy.

    Concurrent callers of ``get()`` share a single fetch. ``refresh()``
    forces a reload; when it fails the previous document stays cached.
    """

    def __init__(self, source: RuleSource, timeout: float = 10.0):
        self.source = source
        self.timeout = timeout
        self._document: Optional[RuleDocument] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[RuleDocument]:
        return self._document

    @property
    def source_name(self) -> str:
        return str(getattr(self.source, "name", type(self.source).__name__))

    async def load(self) -> RuleDocument:
        """Fetch and parse the rule document, replacing the cache."""
        async with self._lock:
            return await self._load_locked()

    async def get(self) -> RuleDocument:
        """Return the cached document, loading it on first use."""
        if self._document is not None:
            return self._document
        async with self._lock:
            if self._document is not None:
                return self._document
            return await self._load_locked()

    async def refresh(self) -> RuleDocument:
        """Force a reload of the rule document."""
        logger.info("Refreshing detection rules from %s", self.source_name)
        return await self.load()

    async def _load_locked(self) -> RuleDocument:
        source = self.source_name
        try:
            raw = await asyncio.wait_for(self.source.fetch(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise RuleLoadError(f"timed out after {self.timeout}s", source) from exc
        except RuleLoadError:
            raise
        except Exception as exc:
            raise RuleLoadError(str(exc) or type(exc).__name__, source) from exc

        document = parse_rule_document(decode_rule_document(raw, source))
        self._document = document
        logger.info("Loaded detection rules %s", document.summary())
        return document
