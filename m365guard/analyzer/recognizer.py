"""Decide whether a page presents itself as a Microsoft 365 login page.

Evidence elements are split into primary (genuine Microsoft markup) and
secondary (look-alike styling, wording). With at least one primary match
the regular thresholds apply; with none, the stricter secondary-only
thresholds apply so a single incidental match cannot trigger recognition.

A recognizer failure returns "not recognized": an internal error must not
turn unrelated pages into login pages that then get blocked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..errors import RecognizerError
from .patterns import matches_any
from .rule_models import DetectionRequirements, Element
from .snapshot import PageSnapshot

logger = logging.getLogger(__name__)


@dataclass
class RecognitionResult:
    recognized: bool = False
    primary_found: int = 0
    total_weight: float = 0.0
    total_elements: int = 0
    matched_ids: list[str] = field(default_factory=list)
    missing_ids: list[str] = field(default_factory=list)
    error: str = ""


def _element_matches(element: Element, snapshot: PageSnapshot) -> bool:
    if element.type == "css_pattern":
        surface = snapshot.css_text
    elif element.type == "source_content":
        surface = snapshot.html
    else:
        raise RecognizerError(f"unsupported element type {element.type!r} for {element.id}")
    return matches_any(surface, element.patterns, element.flags)


def recognize(snapshot: PageSnapshot, requirements: DetectionRequirements) -> RecognitionResult:
    """Evaluate every evidence element and apply the two-tier thresholds."""
    result = RecognitionResult()
    try:
        for element in requirements.elements:
            if _element_matches(element, snapshot):
                result.total_weight += element.weight
                result.total_elements += 1
                if element.is_primary:
                    result.primary_found += 1
                result.matched_ids.append(element.id)
            else:
                result.missing_ids.append(element.id)

        t = requirements.thresholds
        if result.primary_found > 0:
            result.recognized = (
                result.primary_found >= t.minimum_primary_elements
                and result.total_weight >= t.minimum_total_weight
                and result.total_elements >= t.minimum_elements_overall
            )
        else:
            result.recognized = (
                result.total_weight >= t.minimum_secondary_only_weight
                and result.total_elements >= t.minimum_secondary_only_elements
            )
    except Exception as exc:
        logger.error("M365 login page recognition failed: %s", exc)
        return RecognitionResult(recognized=False, error=str(exc))

    logger.debug(
        "M365 login detection: primary=%d weight=%.1f elements=%d found=%s -> %s",
        result.primary_found,
        result.total_weight,
        result.total_elements,
        result.matched_ids,
        "recognized" if result.recognized else "not recognized",
    )
    return result


def is_m365_login_page(snapshot: PageSnapshot, requirements: DetectionRequirements) -> bool:
    return recognize(snapshot, requirements).recognized
