from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

# ECS Fargate accepts these vCPU sizes.
VALID_CPUS = (0.25, 0.5, 1, 2, 4, 8, 16)
MIN_MEMORY_GB = 0.5
MAX_MEMORY_GB = 120


@dataclass(frozen=True, slots=True)
class ResourceShape:
    """
    Requested size of one worker.

    cpu: vCPUs
    memory_gb: memory in GB
    """

    cpu: float
    memory_gb: float

    @property
    def ecs_cpu_units(self) -> str:
        # 1024 units == 1 vCPU
        return str(int(self.cpu * 1024))

    @property
    def ecs_memory_mb(self) -> str:
        return str(int(self.memory_gb * 1024))


class QuotaPolicy(ABC):
    """
    Bounded execution capacity.

    Measures how much of the quota one task consumes and whether
    another task fits next to the ones already running.
    """

    mode: str = ""

    def __init__(self, limit: float):
        self._limit = limit

    @property
    def limit(self) -> float:
        return self._limit

    @abstractmethod
    def usage(self, shape: ResourceShape) -> float:
        ...

    def consumed(self, shapes: Iterable[ResourceShape]) -> float:
        return sum(self.usage(s) for s in shapes)

    def can_allocate(self, in_use: float, shape: ResourceShape) -> bool:
        return in_use + self.usage(shape) <= self._limit

    def can_ever_fit(self, shape: ResourceShape) -> bool:
        return self.usage(shape) <= self._limit

    def __repr__(self) -> str:
        return f"{type(self).__name__}(limit={self._limit})"


class TaskCountQuota(QuotaPolicy):
    """Quota counts concurrently running tasks."""

    mode = "tasks"

    def usage(self, shape: ResourceShape) -> float:
        return 1


class VcpuQuota(QuotaPolicy):
    """Quota counts vCPUs of concurrently running tasks."""

    mode = "vcpus"

    def usage(self, shape: ResourceShape) -> float:
        return shape.cpu


QUOTA_POLICIES = {
    TaskCountQuota.mode: TaskCountQuota,
    VcpuQuota.mode: VcpuQuota,
}
