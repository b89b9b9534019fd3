"""Centralized constants for m365guard.

Enums shared by the analyzer, the action policy and the reporters.
"""

from enum import Enum, IntEnum


class Verdict(str, Enum):
    """Terminal and non-terminal outcomes of one evaluation pass."""

    TRUSTED = "trusted"
    ROGUE_APP = "rogue-app"
    BLOCKED = "blocked"
    SUSPICIOUS = "suspicious"
    SAFE = "safe"

    @property
    def is_threat(self) -> bool:
        return self in (Verdict.ROGUE_APP, Verdict.BLOCKED, Verdict.SUSPICIOUS)

    def __str__(self) -> str:
        return self.value


class Severity(IntEnum):
    """Indicator severity with ranking for comparison."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @classmethod
    def from_string(cls, value: str | None) -> "Severity":
        """Convert string severity to enum, defaulting to MEDIUM."""
        if not value:
            return cls.MEDIUM
        mapping = {
            "low": cls.LOW,
            "medium": cls.MEDIUM,
            "high": cls.HIGH,
            "critical": cls.CRITICAL,
        }
        return mapping.get(str(value).lower(), cls.MEDIUM)

    @property
    def weight(self) -> int:
        """Score weight applied to a matched indicator."""
        return SEVERITY_WEIGHTS[self]

    def __str__(self) -> str:
        return self.name.lower()


SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
}


class ActionKind(str, Enum):
    """Protective action requested from the host."""

    NONE = "none"
    BADGE = "badge"
    WARN = "warn"
    BLOCK = "block"

    def __str__(self) -> str:
        return self.value


# Indicator categories eligible for the legitimate-discussion suppression.
DISCUSSION_SUPPRESSIBLE_CATEGORIES = frozenset({"social_engineering", "brand_impersonation"})

# Markers that make a content change worth re-evaluating.
M365_CONTENT_MARKERS: tuple[str, ...] = ("loginfmt", "idPartnerPL", "Microsoft", "Office 365")
RERUN_TRIGGER_TAGS = frozenset({"form", "input", "script"})

# Inputs disabled when a page is blocked.
CREDENTIAL_INPUT_SELECTOR = (
    "input[type=password], input[type=email], input[name*=user], "
    "input[name*=login], input[name*=email]"
)

# Report sent for a verified Microsoft login; the URL is not defanged.
LEGITIMATE_REPORT_TYPE = "microsoft_logon_detected"
