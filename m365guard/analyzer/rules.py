"""Rule-based building blocks shared by the blocking and legitimacy stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

from .rule_models import RuleDocument
from .snapshot import PageSnapshot


@dataclass(frozen=True)
class RuleContext:
    """Shared context passed to each typed rule check."""

    snapshot: PageSnapshot
    url: str
    document: Optional[RuleDocument] = None


class BlockingCheck(Protocol):
    """Interface for blocking rule types. Returns a reason when the rule fires."""

    type: str

    def apply(self, condition: Mapping, context: RuleContext) -> Optional[str]:  # pragma: no cover - interface
        ...


class LegitimacyCheck(Protocol):
    """Interface for legitimacy rule types. Returns True when the evidence is present."""

    type: str

    def apply(self, condition: Mapping, context: RuleContext) -> bool:  # pragma: no cover - interface
        ...


def condition_list(condition: Mapping, key: str) -> list[str]:
    value = condition.get(key)
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v]
    return []
