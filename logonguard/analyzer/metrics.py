"""Detection metrics tracking.

Shows which indicators fire and how often, so rule authors can tune
severities and thresholds from real traffic.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


# Distinct domains remembered per indicator; later domains only count as hits.
MAX_TRACKED_DOMAINS = 1000


@dataclass
class IndicatorMetrics:
    """Metrics for a single indicator id."""

    hits: int = 0
    last_hit: Optional[datetime] = None
    domains: set = field(default_factory=set)

    def record_hit(self, domain: str) -> None:
        self.hits += 1
        self.last_hit = datetime.now()
        if len(self.domains) < MAX_TRACKED_DOMAINS:
            self.domains.add(domain)

    @property
    def domains_capped(self) -> bool:
        return len(self.domains) >= MAX_TRACKED_DOMAINS


@dataclass
class CategoryMetrics:
    """Metrics for an indicator category."""

    total_hits: int = 0
    indicator_hits: dict = field(default_factory=dict)

    def record_hit(self, indicator_id: str, domain: str) -> None:
        self.total_hits += 1
        if indicator_id not in self.indicator_hits:
            self.indicator_hits[indicator_id] = IndicatorMetrics()
        self.indicator_hits[indicator_id].record_hit(domain)


class DetectionMetrics:
    """Thread-safe metrics collector for page analyses.

    Tracks indicator matches, blocking rule triggers, verdict distribution
    and analysis timings.
    """

    _instance: Optional["DetectionMetrics"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "DetectionMetrics":
        """Singleton pattern for global metrics access."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        self._lock = threading.Lock()
        self._categories: dict[str, CategoryMetrics] = defaultdict(CategoryMetrics)
        self._blocking: dict[str, int] = defaultdict(int)
        self._verdicts: dict[str, int] = defaultdict(int)
        self._total_analyses: int = 0
        self._total_ms: float = 0.0
        self._max_ms: float = 0.0
        self._errors: int = 0
        self._started: datetime = datetime.now()

    def record_indicator_hit(self, category: str, indicator_id: str, domain: str) -> None:
        with self._lock:
            self._categories[category].record_hit(indicator_id, domain)

    def record_blocking_rule(self, rule_id: str) -> None:
        with self._lock:
            self._blocking[rule_id] += 1

    def record_verdict(self, decision: str, elapsed_ms: float = 0.0) -> None:
        """Record a verdict and how long the analysis took."""
        with self._lock:
            self._verdicts[decision] += 1
            self._total_analyses += 1
            self._total_ms += elapsed_ms
            self._max_ms = max(self._max_ms, elapsed_ms)

    def record_error(self) -> None:
        with self._lock:
            self._errors += 1

    def get_summary(self) -> dict:
        """Get a summary of all metrics."""
        with self._lock:
            uptime = datetime.now() - self._started
            avg_ms = self._total_ms / self._total_analyses if self._total_analyses else 0.0
            return {
                "uptime_seconds": int(uptime.total_seconds()),
                "total_analyses": self._total_analyses,
                "analysis_errors": self._errors,
                "avg_analysis_ms": round(avg_ms, 3),
                "max_analysis_ms": round(self._max_ms, 3),
                "verdicts": dict(self._verdicts),
                "blocking_rules": dict(self._blocking),
                "categories": {
                    name: {
                        "total_hits": cat.total_hits,
                        "top_indicators": self._get_top_indicators(cat, 5),
                    }
                    for name, cat in self._categories.items()
                },
            }

    def _get_top_indicators(self, category: CategoryMetrics, n: int) -> list[dict]:
        """Get top N indicators by hit count."""
        ranked = sorted(
            category.indicator_hits.items(),
            key=lambda x: x[1].hits,
            reverse=True,
        )[:n]
        return [
            {
                "id": ind_id,
                "hits": m.hits,
                "unique_domains": len(m.domains),
                "domains_capped": m.domains_capped,
            }
            for ind_id, m in ranked
        ]

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._categories.clear()
            self._blocking.clear()
            self._verdicts.clear()
            self._total_analyses = 0
            self._total_ms = 0.0
            self._max_ms = 0.0
            self._errors = 0
            self._started = datetime.now()


# Global instance
metrics = DetectionMetrics()
