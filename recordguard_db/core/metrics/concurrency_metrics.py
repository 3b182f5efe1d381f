from typing import Dict, Union

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.registry import Collector


class ConcurrencyMetrics:
    """
    Process-wide counters of the concurrency layer.

    Incremented by the service (operations, conflicts, retries) and by the operation
    lock (lock waits). Mutation happens inside a single event-loop turn, so plain
    integer updates are sufficient. None of the methods raise.
    """
    def __init__(self):
        self._operations = 0
        self._conflicts = 0
        self._retries = 0
        self._lock_waits = 0

    def record_operation(self) -> None:
        self._operations += 1

    def record_conflict(self) -> None:
        self._conflicts += 1

    def record_retry(self) -> None:
        self._retries += 1

    def record_lock_wait(self) -> None:
        self._lock_waits += 1

    @property
    def operations(self) -> int:
        return self._operations

    @property
    def conflicts(self) -> int:
        return self._conflicts

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def lock_waits(self) -> int:
        return self._lock_waits

    def _rate(self, count: int) -> float:
        return count / self._operations if self._operations > 0 else 0.0

    @property
    def conflict_rate(self) -> float:
        return self._rate(self._conflicts)

    @property
    def retry_rate(self) -> float:
        return self._rate(self._retries)

    @property
    def lock_wait_rate(self) -> float:
        return self._rate(self._lock_waits)

    def get_metrics(self) -> Dict[str, Union[int, float]]:
        return {
            "conflict_rate": self.conflict_rate,
            "retry_rate": self.retry_rate,
            "lock_wait_rate": self.lock_wait_rate,
            "total_operations": self._operations,
            "total_conflicts": self._conflicts,
            "total_retries": self._retries,
            "total_lock_waits": self._lock_waits,
        }

    def reset(self) -> None:
        self._operations = 0
        self._conflicts = 0
        self._retries = 0
        self._lock_waits = 0


class ConcurrencyMetricsCollector(Collector):
    """
    Prometheus collector exporting a ConcurrencyMetrics instance.

    A custom collector rather than prometheus Counters because the in-process
    counters support reset(), which Prometheus counters do not.
    """
    def __init__(self, metrics: ConcurrencyMetrics, prefix: str = "recordguard"):
        self._metrics = metrics
        self._prefix = prefix

    def collect(self):
        snapshot = self._metrics.get_metrics()
        for name in ("operations", "conflicts", "retries", "lock_waits"):
            yield CounterMetricFamily(
                f"{self._prefix}_{name}",
                f"Total number of {name.replace('_', ' ')} seen by the concurrency layer",
                value=snapshot[f"total_{name}"]
            )
        for name in ("conflict_rate", "retry_rate", "lock_wait_rate"):
            yield GaugeMetricFamily(
                f"{self._prefix}_{name}",
                f"{name.replace('_', ' ').capitalize()} per operation",
                value=snapshot[name]
            )
