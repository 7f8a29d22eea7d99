# engine/dispatch/base.py

"""
Remote executor interface.

Executors own mechanism only:
- launch ONE task on one remote worker
- report its status when asked
- request cancellation

They never queue, never decide admission, never touch the registry.
Transient infrastructure errors are retried inside the executor;
only exhaustion escapes as TransientInfraError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, List, Mapping, Optional

if TYPE_CHECKING:
    from engine.planner.plan import ClusterPlan
    from engine.scheduler.state import TaskRecord
    from engine.storage.results import ResultStore


@dataclass(frozen=True, slots=True)
class WorkerHandle:
    """Opaque reference to one launched worker."""

    worker_id: str
    executor: str
    launched_at: float
    details: Mapping[str, Any] = field(default_factory=dict)


class PollStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    VANISHED = "vanished"


@dataclass(frozen=True, slots=True)
class PollResult:
    status: PollStatus
    result_ref: Optional[str] = None
    error: Optional[BaseException] = None

    # provider-reported runtime window, used for billing
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None

    @classmethod
    def running(cls) -> "PollResult":
        return cls(PollStatus.RUNNING)

    @classmethod
    def succeeded(cls, result_ref: str, started_at=None, stopped_at=None) -> "PollResult":
        return cls(PollStatus.SUCCEEDED, result_ref=result_ref,
                   started_at=started_at, stopped_at=stopped_at)

    @classmethod
    def failed(cls, error: BaseException, started_at=None, stopped_at=None) -> "PollResult":
        return cls(PollStatus.FAILED, error=error,
                   started_at=started_at, stopped_at=stopped_at)

    @classmethod
    def vanished(cls) -> "PollResult":
        return cls(PollStatus.VANISHED)

    @property
    def is_terminal(self) -> bool:
        return self.status in (PollStatus.SUCCEEDED, PollStatus.FAILED)


@dataclass(frozen=True, slots=True)
class LogEvent:
    """One line of worker output."""

    timestamp: float
    message: str


class RemoteExecutor(ABC):
    """
    Mechanism for running one work unit on one remote worker.

    The descriptor for a task is already in the result store under
    tasks/{task_id} when launch() is called; workers write their
    outcome to results/{task_id}.
    """

    name: str = "remote"

    def __init__(self, store: "ResultStore"):
        self.store = store

    def prepare(self, plan: "ClusterPlan") -> None:
        """Called once per session before the first launch."""

    @abstractmethod
    def launch(self, task: "TaskRecord") -> WorkerHandle:
        """
        Raises:
            TransientInfraError (after local retries are exhausted)
            FatalLaunchError
        """

    @abstractmethod
    def poll(self, handle: WorkerHandle) -> PollResult:
        ...

    @abstractmethod
    def cancel(self, handle: WorkerHandle) -> None:
        """
        Best-effort remote cancellation.

        Raises:
            CancelError
        """

    def worker_logs(self, handle: WorkerHandle, last_n: int = 50) -> List[LogEvent]:
        """Most recent output of one worker, oldest first. Empty if unavailable."""
        return []

    def close(self) -> None:
        """Release executor-held resources."""
