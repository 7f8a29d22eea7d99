# engine/planner/plan.py

"""
Cluster plan: the immutable, session-scoped configuration.

A plan is validated once at construction. Nothing about it changes
while a session runs; the evolving queue/registry state lives in the
scheduler, not here.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Union
from uuid import uuid4

from config.settings import get_settings
from engine.dispatch.retry import RetryPolicy
from engine.scheduler.resources import (
    MAX_MEMORY_GB,
    MIN_MEMORY_GB,
    QUOTA_POLICIES,
    VALID_CPUS,
    QuotaPolicy,
    ResourceShape,
)
from engine.utils import get_logger, parse_memory

from .cost_model import PriceSheet, estimate_cost
from .exceptions import (
    CostLimitExceeded,
    InvalidPlan,
    InvalidWorkerShape,
    QuotaConfigurationError,
)

log = get_logger("planner")

EXECUTORS = ("local", "fargate", "celery")
CPU_ARCHITECTURES = ("X86_64", "ARM64")


def worker_shape(cpu: float, memory: Union[int, float, str]) -> ResourceShape:
    """
    Build and validate a worker shape.

    Raises:
        InvalidWorkerShape
    """
    if cpu not in VALID_CPUS:
        raise InvalidWorkerShape(
            f"cpu must be one of: {', '.join(str(c) for c in VALID_CPUS)} (got {cpu})"
        )

    try:
        memory_gb = parse_memory(memory)
    except ValueError as exc:
        raise InvalidWorkerShape(str(exc)) from exc

    if not MIN_MEMORY_GB <= memory_gb <= MAX_MEMORY_GB:
        raise InvalidWorkerShape(
            f"memory must be between {MIN_MEMORY_GB}GB and {MAX_MEMORY_GB}GB (got {memory_gb}GB)"
        )

    return ResourceShape(cpu=float(cpu), memory_gb=memory_gb)


@dataclass(frozen=True)
class ClusterPlan:
    quota: int
    worker_shape: ResourceShape
    quota_mode: str = "tasks"
    executor: str = "local"

    region: str = "us-east-1"
    cluster: str = "cumulus-cluster"
    image: Optional[str] = None
    result_bucket: Optional[str] = None
    result_prefix: str = ""

    timeout_seconds: Optional[float] = 3600
    launch_retries: int = 3
    transient_retry: RetryPolicy = field(default_factory=RetryPolicy)
    vanished_grace_seconds: float = 60.0

    poll_interval: float = 2.0
    poll_concurrency: int = 8
    poll_timeout: float = 30.0
    wait_initial_interval: float = 0.05
    wait_max_interval: float = 2.0

    use_spot: bool = False
    cpu_architecture: str = "X86_64"
    max_cost_per_hour: Optional[float] = None
    executor_options: Mapping[str, Any] = field(default_factory=dict)
    plan_id: str = field(default_factory=lambda: f"cumulus-{uuid4().hex[:12]}")

    def __post_init__(self):
        if isinstance(self.quota, bool) or not isinstance(self.quota, int) or self.quota <= 0:
            raise QuotaConfigurationError(f"quota must be a positive integer, got {self.quota!r}")

        if self.quota_mode not in QUOTA_POLICIES:
            raise QuotaConfigurationError(
                f"quota_mode must be one of: {', '.join(QUOTA_POLICIES)} (got {self.quota_mode!r})"
            )

        if not self.quota_policy.can_ever_fit(self.worker_shape):
            raise QuotaConfigurationError(
                f"quota of {self.quota} {self.quota_mode} cannot fit a single "
                f"{self.worker_shape.cpu:g} vCPU worker"
            )

        if self.executor not in EXECUTORS:
            raise InvalidPlan(f"executor must be one of: {', '.join(EXECUTORS)} (got {self.executor!r})")

        if self.executor in ("fargate", "celery") and not self.result_bucket:
            raise InvalidPlan(f"{self.executor} executor requires a result bucket")

        if self.launch_retries < 0:
            raise InvalidPlan("launch_retries must be >= 0")

        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise InvalidPlan("timeout_seconds must be positive")

        if self.poll_interval <= 0 or self.wait_initial_interval <= 0:
            raise InvalidPlan("poll intervals must be positive")

        if self.poll_timeout <= 0:
            raise InvalidPlan("poll_timeout must be positive")

        if self.cpu_architecture not in CPU_ARCHITECTURES:
            raise InvalidPlan(
                f"cpu_architecture must be one of: {', '.join(CPU_ARCHITECTURES)} (got {self.cpu_architecture!r})"
            )

        if self.max_cost_per_hour is not None:
            hourly = self.estimated_hourly_cost
            if hourly > self.max_cost_per_hour:
                raise CostLimitExceeded(
                    f"Estimated cost (${hourly:.2f}/hr) exceeds limit (${self.max_cost_per_hour:.2f}/hr)"
                )

    # -------------------------
    # DERIVED
    # -------------------------

    @property
    def quota_policy(self) -> QuotaPolicy:
        return QUOTA_POLICIES[self.quota_mode](self.quota)

    @property
    def prices(self) -> PriceSheet:
        return PriceSheet(spot=self.use_spot)

    @property
    def workers_per_wave(self) -> int:
        """How many default-shaped workers run at once under the quota."""
        return int(self.quota // self.quota_policy.usage(self.worker_shape))

    def num_waves(self, total_tasks: int) -> int:
        if total_tasks <= 0:
            return 0
        return math.ceil(total_tasks / self.workers_per_wave)

    @property
    def estimated_hourly_cost(self) -> float:
        return estimate_cost(self.workers_per_wave, self.worker_shape, prices=self.prices).per_hour


@dataclass(frozen=True)
class QuotaCheck:
    """How a plan's vCPU demand compares to the account's Fargate quota."""

    needed_vcpus: float
    available_vcpus: float
    workers_per_wave: int

    @property
    def sufficient(self) -> bool:
        return self.needed_vcpus <= self.available_vcpus


def check_account_quota(plan: ClusterPlan, available_vcpus: float) -> QuotaCheck:
    if plan.quota_mode == "vcpus":
        needed = float(plan.quota)
    else:
        needed = plan.quota * plan.worker_shape.cpu

    return QuotaCheck(
        needed_vcpus=needed,
        available_vcpus=float(available_vcpus),
        workers_per_wave=int(available_vcpus // plan.worker_shape.cpu),
    )


def fit_to_account_quota(plan: ClusterPlan, available_vcpus: float) -> ClusterPlan:
    """
    Cap a plan's quota to what the account can actually run at once.

    Raises:
        QuotaConfigurationError if not even one worker fits
    """
    check = check_account_quota(plan, available_vcpus)
    if check.sufficient:
        return plan

    if check.workers_per_wave < 1:
        raise QuotaConfigurationError(
            f"Account vCPU quota ({available_vcpus:g}) cannot run a single "
            f"{plan.worker_shape.cpu:g} vCPU worker"
        )

    if plan.quota_mode == "vcpus":
        capped = int(available_vcpus)
    else:
        capped = check.workers_per_wave

    log.warning(
        f"Requested {plan.quota} {plan.quota_mode} ({check.needed_vcpus:g} vCPUs) but the account "
        f"quota is {available_vcpus:g} vCPUs; running {check.workers_per_wave} workers per wave"
    )
    return replace(plan, quota=capped)


def build_plan(
    quota: Optional[int] = None,
    worker_shape_or_cpu: Union[ResourceShape, float, None] = None,
    *,
    memory: Union[int, float, str, None] = None,
    check_quota: Optional[bool] = None,
    **options,
) -> ClusterPlan:
    """
    Build a ClusterPlan, filling anything unspecified from Settings.

    Fargate plans are capped to the account's vCPU quota unless
    check_quota (default: Settings.CHECK_ACCOUNT_QUOTA) is off.

    build_plan(quota=2)
    build_plan(quota=20, worker_shape_or_cpu=2, memory="4GB", executor="fargate")
    build_plan(quota=64, worker_shape_or_cpu=ResourceShape(4, 8), quota_mode="vcpus")
    """
    s = get_settings()

    if isinstance(worker_shape_or_cpu, ResourceShape):
        shape = worker_shape(worker_shape_or_cpu.cpu, worker_shape_or_cpu.memory_gb)
    else:
        cpu = worker_shape_or_cpu if worker_shape_or_cpu is not None else s.DEFAULT_CPU
        shape = worker_shape(cpu, memory if memory is not None else s.DEFAULT_MEMORY)

    defaults = dict(
        quota_mode=s.DEFAULT_QUOTA_MODE,
        region=s.AWS_REGION,
        cluster=s.ECS_CLUSTER,
        image=s.WORKER_IMAGE,
        result_bucket=s.RESULT_BUCKET,
        result_prefix=s.RESULT_PREFIX,
        timeout_seconds=s.DEFAULT_TIMEOUT_SECONDS,
        launch_retries=s.LAUNCH_RETRIES,
        vanished_grace_seconds=s.VANISHED_GRACE_SECONDS,
        poll_interval=s.POLL_INTERVAL_SECONDS,
        cpu_architecture=s.DEFAULT_CPU_ARCHITECTURE,
        max_cost_per_hour=s.MAX_COST_PER_HOUR,
    )
    defaults.update(options)

    plan = ClusterPlan(
        quota=quota if quota is not None else s.DEFAULT_QUOTA,
        worker_shape=shape,
        **defaults,
    )

    check_quota = s.CHECK_ACCOUNT_QUOTA if check_quota is None else check_quota
    if check_quota and plan.executor == "fargate":
        from engine.dispatch.ecs import discover_vcpu_quota

        plan = fit_to_account_quota(plan, discover_vcpu_quota(plan.region))

    return plan
