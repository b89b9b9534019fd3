"""Analyzer modules for m365guard."""

from .actions import ActionPolicy, ProtectiveAction
from .engine import DetectionEngine
from .monitor import ContentChange, ReevaluationController
from .rule_store import RuleStore
from .session import ProtectionSession
from .snapshot import PageSnapshot

__all__ = [
    "ActionPolicy",
    "ContentChange",
    "DetectionEngine",
    "PageSnapshot",
    "ProtectionSession",
    "ProtectiveAction",
    "ReevaluationController",
    "RuleStore",
]
