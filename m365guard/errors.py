"""Exception taxonomy for the detection pipeline.

Only ``RuleLoadError`` is allowed to escape ``DetectionEngine.evaluate``.
Every other error is raised inside a component and converted to that
component's fail value at its boundary.
"""


class DetectionError(Exception):
    """Base exception for detection pipeline errors."""

    pass


class RuleLoadError(DetectionError):
    """The rule document could not be fetched or parsed."""

    def __init__(self, message: str, source: str = ""):
        self.message = message
        self.source = source
        detail = f" ({source})" if source else ""
        super().__init__(f"Rule load failed{detail}: {message}")


class PatternError(DetectionError):
    """A rule pattern could not be compiled."""

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Invalid pattern {pattern!r}: {reason}")


class PatternTimeoutError(PatternError):
    """A pattern search ran past its time allowance."""

    def __init__(self, pattern: str, timeout: float):
        self.timeout = timeout
        super().__init__(str(pattern), f"search exceeded {timeout:.3f}s")


class ClassifierError(DetectionError):
    """Origin classification failed."""

    pass


class RecognizerError(DetectionError):
    """Login-page recognition failed."""

    pass


class BlockingEvaluatorError(DetectionError):
    """A blocking rule could not be evaluated."""

    def __init__(self, rule_id: str, reason: str):
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"Blocking rule {rule_id} failed: {reason}")


class ScorerError(DetectionError):
    """Legitimacy scoring failed."""

    pass
