# engine/planner/cost_model.py

"""
Cost model for Cumulus.

Prices a task from its billed runtime and resource shape, and keeps
the session's running total.

Fargate pricing (us-east-1):
https://aws.amazon.com/fargate/pricing/
"""

import math
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from engine.scheduler.resources import ResourceShape
from engine.scheduler.state import TaskRecord
from engine.utils import get_logger

log = get_logger("planner.cost")

# -------------------------
# RATES (GLOBAL POLICY)
# -------------------------

VCPU_PRICE_PER_HOUR = 0.04048
GB_PRICE_PER_HOUR = 0.004445
SPOT_PRICE_FACTOR = 0.3

BILLING_GRANULARITY_SECONDS = 1
MINIMUM_BILLED_SECONDS = 60


@dataclass(frozen=True, slots=True)
class PriceSheet:
    vcpu_per_hour: float = VCPU_PRICE_PER_HOUR
    gb_per_hour: float = GB_PRICE_PER_HOUR
    spot: bool = False
    granularity_seconds: float = BILLING_GRANULARITY_SECONDS
    minimum_seconds: float = MINIMUM_BILLED_SECONDS

    def hourly_rate(self, shape: ResourceShape) -> float:
        rate = shape.cpu * self.vcpu_per_hour + shape.memory_gb * self.gb_per_hour
        if self.spot:
            rate *= SPOT_PRICE_FACTOR
        return rate

    def billed_seconds(self, runtime_seconds: float) -> float:
        """Round runtime up to the billing granularity, then apply the minimum."""
        runtime_seconds = max(0.0, runtime_seconds)
        granularity = self.granularity_seconds
        if granularity > 0:
            rounded = math.ceil(runtime_seconds / granularity) * granularity
        else:
            rounded = runtime_seconds
        return max(rounded, self.minimum_seconds)


@dataclass(frozen=True, slots=True)
class CostRecord:
    task_id: str
    billed_seconds: float
    shape: ResourceShape
    hourly_rate: float
    cost: float


@dataclass(frozen=True, slots=True)
class CostReport:
    records: tuple
    total: float

    @property
    def task_count(self) -> int:
        return len(self.records)


@dataclass(frozen=True, slots=True)
class CostEstimate:
    per_worker_hour: float
    per_hour: float
    total: float


class CostAccountant:
    """
    Derives one CostRecord per task that actually ran.

    Only terminal tasks are priced. Failed and cancelled tasks that ran
    are billed for their real runtime; tasks that never started cost
    nothing and get no record. Recording the same task twice returns
    the first record, so the total never double counts.
    """

    def __init__(self, prices: Optional[PriceSheet] = None):
        self.prices = prices or PriceSheet()
        self._records: Dict[str, CostRecord] = {}
        self._order: List[str] = []
        self._total = 0.0
        self._lock = threading.Lock()

    def record(self, task: TaskRecord) -> Optional[CostRecord]:
        if not task.is_terminal:
            raise ValueError(f"Task {task.task_id} is not terminal ({task.state.value})")

        window = task.billing_window
        if window is None:
            return None

        with self._lock:
            existing = self._records.get(task.task_id)
            if existing is not None:
                return existing

            start, stop = window
            billed = self.prices.billed_seconds(stop - start)
            rate = self.prices.hourly_rate(task.shape)
            record = CostRecord(
                task_id=task.task_id,
                billed_seconds=billed,
                shape=task.shape,
                hourly_rate=rate,
                cost=rate * billed / 3600,
            )
            self._records[task.task_id] = record
            self._order.append(task.task_id)
            self._total += record.cost

        log.debug(f"Task {task.task_id}: {billed:.0f}s billed, ${record.cost:.6f}")
        return record

    def get(self, task_id: str) -> Optional[CostRecord]:
        with self._lock:
            return self._records.get(task_id)

    @property
    def total(self) -> float:
        with self._lock:
            return self._total

    def report(self) -> CostReport:
        with self._lock:
            records = tuple(self._records[t] for t in self._order)
            return CostReport(records=records, total=self._total)


def estimate_cost(
    workers: int,
    shape: ResourceShape,
    hours: float = 1.0,
    prices: Optional[PriceSheet] = None,
) -> CostEstimate:
    """
    Up-front estimate for running `workers` workers of `shape` for `hours`.
    """
    prices = prices or PriceSheet()
    per_worker = prices.hourly_rate(shape)
    return CostEstimate(
        per_worker_hour=per_worker,
        per_hour=per_worker * workers,
        total=per_worker * workers * hours,
    )
