import threading
from typing import Dict, Iterator, Mapping

from engine.exceptions import InvalidTransition, UnknownTaskError

from .state import TaskRecord
from .types import ALLOWED_TRANSITIONS, TaskState

# Fields a non-transition update may touch.
_MUTABLE_FIELDS = frozenset({"launch_attempts", "vanished_since"})


class TaskRegistry:
    """
    Authoritative record of every submitted task.

    Single source of truth for:
    - which tasks exist
    - what state each one is in

    Records are immutable; transitions swap in a new record.
    """

    __slots__ = ("_tasks", "_lock")

    def __init__(self):
        self._tasks: Dict[str, TaskRecord] = {}
        self._lock = threading.Lock()

    def register(self, record: TaskRecord) -> TaskRecord:
        """
        Idempotent by task_id: re-registering returns the existing record.
        """
        with self._lock:
            existing = self._tasks.get(record.task_id)
            if existing is not None:
                return existing
            if record.state != TaskState.PENDING:
                raise InvalidTransition(
                    f"Task {record.task_id} must be registered as pending, got {record.state.value}"
                )
            self._tasks[record.task_id] = record
            return record

    def get(self, task_id: str) -> TaskRecord:
        with self._lock:
            try:
                return self._tasks[task_id]
            except KeyError:
                raise UnknownTaskError(task_id) from None

    def transition(self, task_id: str, new_state: TaskState, **changes) -> TaskRecord:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise UnknownTaskError(task_id)

            if new_state not in ALLOWED_TRANSITIONS[current.state]:
                raise InvalidTransition(
                    f"Task {task_id}: {current.state.value} -> {new_state.value} not allowed"
                )

            if "started_at" in changes:
                if current.state != TaskState.PENDING or new_state != TaskState.RUNNING:
                    raise InvalidTransition(
                        f"Task {task_id}: start timestamp only set on pending -> running"
                    )
                if current.started_at is not None:
                    raise InvalidTransition(f"Task {task_id}: start timestamp already set")

            updated = current.evolve(state=new_state, **changes)
            self._tasks[task_id] = updated
            return updated

    def update(self, task_id: str, **changes) -> TaskRecord:
        """
        Change bookkeeping fields without a state transition.
        """
        illegal = set(changes) - _MUTABLE_FIELDS
        if illegal:
            raise InvalidTransition(f"Fields {sorted(illegal)} change only through transition()")

        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise UnknownTaskError(task_id)
            if current.is_terminal:
                raise InvalidTransition(f"Task {task_id} is terminal ({current.state.value})")
            updated = current.evolve(**changes)
            self._tasks[task_id] = updated
            return updated

    def discard(self, task_id: str) -> TaskRecord:
        """
        Forget a terminal task.
        """
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise UnknownTaskError(task_id)
            if not current.is_terminal:
                raise InvalidTransition(f"Task {task_id} is not terminal ({current.state.value})")
            return self._tasks.pop(task_id)

    def snapshot(self) -> Mapping[str, TaskRecord]:
        """
        Consistent point-in-time copy of all records.
        """
        with self._lock:
            return dict(self._tasks)

    def count_by_state(self) -> Dict[TaskState, int]:
        counts = {state: 0 for state in TaskState}
        for record in self.snapshot().values():
            counts[record.state] += 1
        return counts

    def __contains__(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __iter__(self) -> Iterator[TaskRecord]:
        return iter(self.snapshot().values())
