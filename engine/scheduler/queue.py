"""
Wave queue: admission control as pure state transformations.

Every function takes a PlanState and returns a new one. Nothing here
mutates its input, so two holders of a PlanState can never observe
divergent queue contents after a partial update. The scheduler owns the
single current PlanState and swaps it under its lock.
"""

from dataclasses import dataclass, replace
from typing import FrozenSet, Mapping, Optional, Tuple

from .resources import QuotaPolicy
from .state import TaskRecord
from .types import TaskState


@dataclass(frozen=True, slots=True)
class Wave:
    """Tasks admitted together by one advance()."""

    index: int
    members: Tuple[str, ...]
    admitted_at: float


@dataclass(frozen=True, slots=True)
class PlanState:
    """
    pending: FIFO queue of task ids waiting for admission
    running: task ids holding a quota slot (launching or running)
    """

    pending: Tuple[str, ...] = ()
    running: FrozenSet[str] = frozenset()
    wave_index: int = 0
    waves: Tuple[Wave, ...] = ()

    @property
    def running_count(self) -> int:
        return len(self.running)

    @property
    def pending_count(self) -> int:
        return len(self.pending)

    def holds_slot(self, task_id: str) -> bool:
        return task_id in self.running

    def is_queued(self, task_id: str) -> bool:
        return task_id in self.pending


def enqueue(state: PlanState, task_id: str) -> PlanState:
    """Append to the tail. Already queued or admitted tasks are unaffected."""
    if task_id in state.pending or task_id in state.running:
        return state
    return replace(state, pending=state.pending + (task_id,))


def remove(state: PlanState, task_id: str) -> PlanState:
    """Drop a task from the pending queue without touching running slots."""
    if task_id not in state.pending:
        return state
    return replace(state, pending=tuple(t for t in state.pending if t != task_id))


def release(state: PlanState, task_id: str) -> Tuple[PlanState, bool]:
    """
    Free a task's quota slot.

    Idempotent: releasing a task without a slot returns the state
    unchanged and False.
    """
    if task_id not in state.running:
        return state, False
    return replace(state, running=state.running - {task_id}), True


def requeue_front(state: PlanState, task_id: str) -> PlanState:
    """Return a task whose launch failed to the head of the queue."""
    state, _ = release(state, task_id)
    state = remove(state, task_id)
    return replace(state, pending=(task_id,) + state.pending)


def advance(
    state: PlanState,
    snapshot: Mapping[str, TaskRecord],
    quota: QuotaPolicy,
    now: float,
) -> Tuple[PlanState, Optional[Wave]]:
    """
    Admit tasks from the head of the queue while they fit the quota.

    Admission is strictly FIFO: the first task that does not fit stops
    the scan, later (smaller) tasks never overtake it. Queue entries
    whose task is no longer pending (cancelled, failed) are dropped.
    """
    in_use = quota.consumed(
        snapshot[t].shape for t in state.running if t in snapshot
    )

    admitted = []
    kept = []
    blocked = False

    for task_id in state.pending:
        if blocked:
            kept.append(task_id)
            continue

        record = snapshot.get(task_id)
        if record is None or record.state != TaskState.PENDING:
            continue  # stale entry

        if not quota.can_allocate(in_use, record.shape):
            blocked = True  # backpressure
            kept.append(task_id)
            continue

        admitted.append(task_id)
        in_use += quota.usage(record.shape)

    if not admitted:
        if len(kept) == len(state.pending):
            return state, None
        return replace(state, pending=tuple(kept)), None

    wave = Wave(
        index=state.wave_index + 1,
        members=tuple(admitted),
        admitted_at=now,
    )
    new_state = PlanState(
        pending=tuple(kept),
        running=state.running | frozenset(admitted),
        wave_index=wave.index,
        waves=state.waves + (wave,),
    )
    return new_state, wave
