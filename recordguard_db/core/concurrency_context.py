from recordguard_db.core.lock.operation_lock import OperationLock
from recordguard_db.core.metrics.concurrency_metrics import ConcurrencyMetrics


class ConcurrencyContext:
    """
    Holds the only process-local shared state of the concurrency layer: the operation
    lock set and the metrics counters.

    Create one per application (or per process) and hand it to every service that must
    see the same locks. Tests create their own and call reset() between cases.
    """
    def __init__(self):
        self.metrics = ConcurrencyMetrics()
        self.lock = OperationLock(self.metrics)

    def reset(self) -> None:
        self.lock.reset()
        self.metrics.reset()
