"""Structural blocking rules.

Blocking is binary and first-match: rules run in document order and the
first one that fires decides. A rule that cannot be evaluated (for example
because of a malformed selector) blocks, since these rules guard the
credential submission path itself.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional

from ..errors import BlockingEvaluatorError
from .detector_models import BlockingResult
from .patterns import count_matches
from .rule_models import BlockingRule
from .rules import BlockingCheck, RuleContext, condition_list
from .snapshot import PageSnapshot

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_ACTION = "login.microsoftonline.com"


def _required_action(condition: Mapping, default: str = "") -> str:
    # Older rule documents call the must-contain substring "action_must_not_contain".
    return str(
        condition.get("action_must_contain")
        or condition.get("action_must_not_contain")
        or default
    )


class FormActionValidation:
    type = "form_action_validation"

    def apply(self, condition: Mapping, context: RuleContext) -> Optional[str]:
        required = _required_action(condition)
        if not required:
            logger.debug("form_action_validation without a required action; nothing to check")
            return None
        for form in context.snapshot.forms(condition.get("form_selector") or "form"):
            if condition.get("has_password_field") and not form.has_password_field:
                continue
            if required not in form.action:
                return f'Form action "{form.action}" does not contain {required}'
        return None


class ResourceValidation:
    type = "resource_validation"

    def apply(self, condition: Mapping, context: RuleContext) -> Optional[str]:
        marker = str(condition.get("resource_pattern") or "")
        required_origin = str(condition.get("required_origin") or "")
        if not marker:
            logger.debug("resource_validation without resource_pattern; nothing to check")
            return None
        for url in context.snapshot.resources:
            if marker in url and not url.startswith(required_origin):
                return f'Resource "{url}" does not come from required origin "{required_origin}"'
        return None


class CssSpoofingValidation:
    type = "css_spoofing_validation"

    def apply(self, condition: Mapping, context: RuleContext) -> Optional[str]:
        indicators = condition_list(condition, "css_indicators")
        if not indicators:
            return None
        snapshot = context.snapshot
        minimum = int(condition.get("minimum_matches") or 1)
        surface = f"{snapshot.css_text}\n{snapshot.html}"
        found = count_matches(surface, indicators, condition.get("flags"))
        if found < minimum:
            return None

        required = _required_action(condition, DEFAULT_REQUIRED_ACTION)
        for form in snapshot.forms(condition.get("form_selector") or "form"):
            if not form.has_credential_field:
                continue
            if required not in form.action:
                return (
                    f"Microsoft login styling detected ({found} CSS indicators) with "
                    f'credential form posting to "{form.action}"'
                )
        return None


DEFAULT_CHECKS: tuple[BlockingCheck, ...] = (
    FormActionValidation(),
    ResourceValidation(),
    CssSpoofingValidation(),
)


class BlockingRuleEvaluator:
    """Runs blocking rules against a page snapshot."""

    def __init__(self, checks: Iterable[BlockingCheck] = DEFAULT_CHECKS):
        self._checks = {check.type: check for check in checks}

    def _apply(self, rule: BlockingRule, context: RuleContext) -> Optional[str]:
        check = self._checks.get(rule.type)
        if check is None:
            logger.warning("Unknown blocking rule type %r (rule %s); skipping", rule.type, rule.id)
            return None
        try:
            return check.apply(rule.condition, context)
        except Exception as exc:
            raise BlockingEvaluatorError(rule.id, str(exc) or type(exc).__name__) from exc

    def evaluate(self, rules: Iterable[BlockingRule], snapshot: PageSnapshot) -> BlockingResult:
        context = RuleContext(snapshot=snapshot, url=snapshot.url)
        try:
            for rule in rules:
                reason = self._apply(rule, context)
                if reason:
                    logger.warning("Blocking rule triggered: %s - %s", rule.id, reason)
                    return BlockingResult(
                        should_block=True,
                        reason=reason,
                        rule_id=rule.id,
                        severity=rule.severity,
                    )
        except BlockingEvaluatorError as exc:
            logger.error("%s; blocking for safety", exc)
            return BlockingResult(
                should_block=True,
                reason=f"Blocking rule {exc.rule_id} could not be evaluated - blocking for safety",
                rule_id=exc.rule_id,
                severity="critical",
                error=exc.reason,
            )
        except Exception as exc:
            logger.error("Blocking rules check failed: %s", exc)
            return BlockingResult(
                should_block=True,
                reason="Blocking rules check failed - blocking for safety",
                severity="critical",
                error=str(exc),
            )
        return BlockingResult()


def evaluate_blocking_rules(rules: Iterable[BlockingRule], snapshot: PageSnapshot) -> BlockingResult:
    return BlockingRuleEvaluator().evaluate(rules, snapshot)
