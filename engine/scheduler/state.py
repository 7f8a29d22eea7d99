from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Optional

from .resources import ResourceShape
from .types import TaskState

if TYPE_CHECKING:
    from engine.dispatch.base import WorkerHandle


@dataclass(frozen=True, slots=True)
class TaskRecord:
    """
    Registry-owned record of one task.

    Immutable: every change produces a new record through evolve(),
    so a snapshot handed out earlier never changes underneath its holder.
    """

    task_id: str
    descriptor_ref: str
    shape: ResourceShape
    submitted_at: float
    state: TaskState = TaskState.PENDING
    timeout_seconds: Optional[float] = None

    # set on pending -> running, at most once
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    result_ref: Optional[str] = None
    error: Optional[BaseException] = None
    worker_handle: Optional["WorkerHandle"] = None
    wave_index: Optional[int] = None

    launch_attempts: int = 0
    vanished_since: Optional[float] = None

    # provider-reported billing window, when available
    billed_started_at: Optional[float] = None
    billed_stopped_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def billing_window(self) -> Optional[tuple[float, float]]:
        """
        (start, stop) of billed runtime, or None if the task never ran.
        Provider timestamps win over scheduler-observed ones.
        """
        start = self.billed_started_at if self.billed_started_at is not None else self.started_at
        if start is None:
            return None
        stop = self.billed_stopped_at if self.billed_stopped_at is not None else self.completed_at
        if stop is None:
            return None
        return start, max(stop, start)

    def evolve(self, **changes) -> "TaskRecord":
        return replace(self, **changes)
