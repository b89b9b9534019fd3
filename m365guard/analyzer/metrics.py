"""Detection metrics for rule tuning.

Shows which indicators fire, how often and on how many hosts, plus the
verdict distribution, so thresholds and patterns in the rule document can
be tuned from data. One collector belongs to one engine; there is no
process-wide instance.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class IndicatorMetrics:
    """Metrics for a single indicator."""

    hits: int = 0
    last_hit: Optional[datetime] = None
    hosts: set = field(default_factory=set)

    def record_hit(self, host: str) -> None:
        self.hits += 1
        self.last_hit = datetime.now()
        if host:
            self.hosts.add(host)


@dataclass
class CategoryMetrics:
    """Metrics for an indicator category."""

    total_hits: int = 0
    hosts: set = field(default_factory=set)
    indicator_hits: dict = field(default_factory=dict)

    def record_indicator_hit(self, indicator_id: str, host: str) -> None:
        self.total_hits += 1
        if host:
            self.hosts.add(host)
        if indicator_id not in self.indicator_hits:
            self.indicator_hits[indicator_id] = IndicatorMetrics()
        self.indicator_hits[indicator_id].record_hit(host)


class DetectionMetrics:
    """Thread-safe metrics collector for one detection engine."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._categories: dict[str, CategoryMetrics] = defaultdict(CategoryMetrics)
        self._verdicts: dict[str, int] = defaultdict(int)
        self._blocking_rules: dict[str, int] = defaultdict(int)
        self._total_evaluations: int = 0
        self._incomplete_scans: int = 0
        self._started: datetime = datetime.now()

    def record_indicator_hit(self, category: str, indicator_id: str, host: str) -> None:
        with self._lock:
            self._categories[category].record_indicator_hit(indicator_id, host)

    def record_blocking_rule(self, rule_id: str) -> None:
        with self._lock:
            self._blocking_rules[rule_id or "unknown"] += 1

    def record_verdict(self, verdict: str, incomplete_scan: bool = False) -> None:
        """Record a verdict classification."""
        with self._lock:
            self._verdicts[verdict] += 1
            self._total_evaluations += 1
            if incomplete_scan:
                self._incomplete_scans += 1

    def get_summary(self) -> dict:
        """Get a summary of all metrics."""
        with self._lock:
            uptime = datetime.now() - self._started
            return {
                "uptime_seconds": int(uptime.total_seconds()),
                "total_evaluations": self._total_evaluations,
                "incomplete_scans": self._incomplete_scans,
                "verdicts": dict(self._verdicts),
                "blocking_rules": dict(self._blocking_rules),
                "categories": {
                    name: {
                        "total_hits": cat.total_hits,
                        "unique_hosts": len(cat.hosts),
                        "top_indicators": self._get_top_indicators(cat, 5),
                    }
                    for name, cat in self._categories.items()
                },
            }

    @staticmethod
    def _get_top_indicators(category: CategoryMetrics, n: int) -> list[dict]:
        ranked = sorted(
            category.indicator_hits.items(),
            key=lambda x: x[1].hits,
            reverse=True,
        )[:n]
        return [{"indicator": i, "hits": m.hits} for i, m in ranked]

