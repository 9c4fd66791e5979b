"""
Metrics Collection for the Sync Engine

Collects and exposes metrics for:
- Order mirroring (mirrored, skipped, failed)
- Storefront stock pushes (sent, failed, unchanged)
- Sync failures (recorded, resolved, escalated)
- Processing times (average, p95)

Metrics live in memory for the lifetime of the process and are exposed
through GET /metrics.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Any


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class OrderMetrics:
    """Counters for order events."""
    mirrored: int = 0
    skipped: int = 0
    failed: int = 0

    # Skip reasons (not_paid, already_processed, ...)
    skip_reasons: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class StockMetrics:
    """Counters for storefront stock pushes."""
    pushed: int = 0
    push_failed: int = 0
    unchanged: int = 0
    restored: int = 0


@dataclass
class FailureMetrics:
    """Counters for sync failures and their recovery."""
    recorded: int = 0
    resolved: int = 0
    escalated: int = 0
    retries: int = 0

    by_category: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(lambda: {"recorded": 0, "resolved": 0, "escalated": 0}))


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    max_samples: int = 1000
    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str):
        samples = self.by_stage[stage]
        samples.append(duration_ms)
        if len(samples) > self.max_samples:
            self.by_stage[stage] = samples[-self.max_samples:]

    def get_average(self, stage: str) -> float:
        samples = self.by_stage.get(stage, [])
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str) -> float:
        samples = self.by_stage.get(stage, [])
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for the sync engine.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_order_mirrored()
        metrics.record_processing_time("reconciliation", 1500)
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self.orders = OrderMetrics()
        self.stock = StockMetrics()
        self.failures = FailureMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    # =========================================================================
    # Orders
    # =========================================================================

    def record_order_mirrored(self):
        with self._lock:
            self.orders.mirrored += 1

    def record_order_skipped(self, reason: str):
        with self._lock:
            self.orders.skipped += 1
            self.orders.skip_reasons[reason] += 1

    def record_order_failed(self):
        with self._lock:
            self.orders.failed += 1

    # =========================================================================
    # Stock
    # =========================================================================

    def record_stock_pushed(self):
        with self._lock:
            self.stock.pushed += 1

    def record_stock_push_failed(self):
        with self._lock:
            self.stock.push_failed += 1

    def record_stock_unchanged(self, count: int = 1):
        with self._lock:
            self.stock.unchanged += count

    def record_stock_restored(self):
        with self._lock:
            self.stock.restored += 1

    # =========================================================================
    # Failures
    # =========================================================================

    def record_failure(self, category: str):
        with self._lock:
            self.failures.recorded += 1
            self.failures.by_category[category]["recorded"] += 1

    def record_recovery_retry(self):
        with self._lock:
            self.failures.retries += 1

    def record_recovery_resolved(self, category: str):
        with self._lock:
            self.failures.resolved += 1
            self.failures.by_category[category]["resolved"] += 1

    def record_recovery_escalated(self, category: str):
        with self._lock:
            self.failures.escalated += 1
            self.failures.by_category[category]["escalated"] += 1

    # =========================================================================
    # Timing
    # =========================================================================

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, [])),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "orders": {
                    "mirrored": self.orders.mirrored,
                    "skipped": self.orders.skipped,
                    "failed": self.orders.failed,
                    "skip_reasons": dict(self.orders.skip_reasons),
                },
                "stock": {
                    "pushed": self.stock.pushed,
                    "push_failed": self.stock.push_failed,
                    "unchanged": self.stock.unchanged,
                    "restored": self.stock.restored,
                },
                "failures": {
                    "recorded": self.failures.recorded,
                    "resolved": self.failures.resolved,
                    "escalated": self.failures.escalated,
                    "retries": self.failures.retries,
                    "by_category": {k: dict(v) for k, v in self.failures.by_category.items()},
                },
                "timings": {
                    stage: {
                        "average_ms": self.timings.get_average(stage),
                        "p95_ms": self.timings.get_p95(stage),
                    }
                    for stage in self.timings.by_stage.keys()
                },
            }


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()
