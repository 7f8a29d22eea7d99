import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from engine.dispatch.base import PollResult, PollStatus, RemoteExecutor, WorkerHandle
from engine.exceptions import (
    CancelError,
    CumulusError,
    FatalLaunchError,
    ResolutionTimeout,
    TaskRuntimeError,
    TaskTimeoutError,
    TransientInfraError,
    UnknownTaskError,
    WorkerVanishedError,
)
from engine.planner.cost_model import CostAccountant
from engine.planner.plan import ClusterPlan
from engine.storage.results import ResultStore
from engine.utils import get_logger

from . import queue
from .metrics import SchedulerMetrics
from .monitor import CompletionMonitor
from .queue import PlanState, Wave
from .registry import TaskRegistry
from .resources import ResourceShape
from .state import TaskRecord
from .types import TaskState

log = get_logger("scheduler")


def new_task_id() -> str:
    return f"task-{uuid4().hex}"


@dataclass(frozen=True, slots=True)
class SchedulerStatus:
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    current_wave: int
    slots_in_use: int
    quota: int
    total_cost: float

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed + self.cancelled


class WaveScheduler:
    """
    Authoritative scheduler for one session.

    Owns:
    - the task registry (FSM)
    - the wave queue state (admission under quota)
    - launch retry decisions
    - timeouts and vanished-worker detection
    - cost recording on terminal transitions

    Does NOT:
    - execute tasks (executor)
    - serialize work (session)
    - block callers except inside wait()

    Every registry or plan-state mutation happens under self._lock.
    Provider calls (launch, poll, cancel) happen outside it.
    """

    def __init__(
        self,
        plan: ClusterPlan,
        executor: RemoteExecutor,
        store: ResultStore,
        accountant: Optional[CostAccountant] = None,
        metrics: Optional[SchedulerMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.plan = plan
        self.quota = plan.quota_policy
        self.executor = executor
        self.store = store
        self.accountant = accountant or CostAccountant(plan.prices)
        self.metrics = metrics or SchedulerMetrics()
        self.registry = TaskRegistry()

        self._clock = clock
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._state = PlanState()

        self._prepare_lock = threading.Lock()
        self._prepared = False
        self._closed = False

        self._monitor: Optional[CompletionMonitor] = None
        self._poll_pool: Optional[ThreadPoolExecutor] = None
        self._polls_in_flight: Set[str] = set()

        self.metrics.mark_time("session_started")

    # ------------------------------------------------------------------
    # INSPECTION
    # ------------------------------------------------------------------

    @property
    def state(self) -> PlanState:
        with self._lock:
            return self._state

    @property
    def running_count(self) -> int:
        return self.state.running_count

    @property
    def monitoring(self) -> bool:
        return self._monitor is not None and self._monitor.is_running

    def get(self, task_id: str) -> TaskRecord:
        return self.registry.get(task_id)

    def status(self) -> SchedulerStatus:
        with self._lock:
            counts = self.registry.count_by_state()
            state = self._state
        return SchedulerStatus(
            pending=counts[TaskState.PENDING],
            running=counts[TaskState.RUNNING],
            completed=counts[TaskState.COMPLETED],
            failed=counts[TaskState.FAILED],
            cancelled=counts[TaskState.CANCELLED],
            current_wave=state.wave_index,
            slots_in_use=state.running_count,
            quota=self.plan.quota,
            total_cost=self.accountant.total,
        )

    # ------------------------------------------------------------------
    # SUBMISSION
    # ------------------------------------------------------------------

    def submit(
        self,
        descriptor: bytes,
        *,
        shape: Optional[ResourceShape] = None,
        timeout_seconds: Optional[float] = None,
        task_id: Optional[str] = None,
    ) -> TaskRecord:
        """
        Register a task, enqueue it and run one admission pass.

        Re-submitting an existing task_id is a no-op returning the
        existing record.
        """
        if self._closed:
            raise RuntimeError("Scheduler is closed")

        task_id = task_id or new_task_id()
        if task_id in self.registry:
            return self.registry.get(task_id)

        shape = shape or self.plan.worker_shape
        timeout = timeout_seconds if timeout_seconds is not None else self.plan.timeout_seconds
        descriptor_ref = self.store.put_descriptor(task_id, descriptor)

        record = TaskRecord(
            task_id=task_id,
            descriptor_ref=descriptor_ref,
            shape=shape,
            submitted_at=self._clock(),
            timeout_seconds=timeout,
        )

        with self._lock:
            registered = self.registry.register(record)
            if registered is not record:
                return registered

            self.metrics.inc("tasks_submitted_total")

            if not self.quota.can_ever_fit(shape):
                self._finish(
                    task_id,
                    TaskState.FAILED,
                    error=FatalLaunchError(
                        f"Task shape ({shape.cpu:g} vCPU) exceeds the whole quota ({self.quota.limit} {self.quota.mode})"
                    ),
                )
                return self.registry.get(task_id)

            self._state = queue.enqueue(self._state, task_id)

        self.advance()
        return self.registry.get(task_id)

    # ------------------------------------------------------------------
    # ADMISSION (wave progression)
    # ------------------------------------------------------------------

    def advance(self) -> List[Wave]:
        """
        Admit queued tasks into free quota and launch them.

        Safe to call concurrently from any path: each pass computes its
        admission from the current state under the lock, and admitted
        tasks hold their slot before the lock is released.
        """
        waves: List[Wave] = []

        while True:
            with self._lock:
                if self._closed:
                    break
                self._state, wave = queue.advance(
                    self._state, self.registry.snapshot(), self.quota, self._clock()
                )
                self._update_gauges()
                if wave is None:
                    break

                log.info(
                    f"Starting wave {wave.index}: submitting {len(wave.members)} tasks "
                    f"({self._state.pending_count} pending, {self._state.running_count} in flight)"
                )
                self.metrics.inc("waves_started_total")
                self.metrics.inc("tasks_admitted_total", len(wave.members))

            waves.append(wave)
            for task_id in wave.members:
                self._launch(task_id, wave)

        return waves

    def _launch(self, task_id: str, wave: Wave) -> None:
        record = self.registry.get(task_id)
        if record.is_terminal:
            return  # cancelled between admission and launch

        try:
            self._ensure_prepared()
            handle = self.executor.launch(record)
        except TransientInfraError as exc:
            self._on_launch_failed(task_id, exc, retryable=True)
        except FatalLaunchError as exc:
            self._on_launch_failed(task_id, exc, retryable=False)
        except Exception as exc:
            log.exception(f"Executor {self.executor.name} crashed launching {task_id}")
            error = FatalLaunchError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
            self._on_launch_failed(task_id, error, retryable=False)
        else:
            self._on_launched(task_id, handle, wave)

    def _ensure_prepared(self) -> None:
        with self._prepare_lock:
            if self._prepared:
                return
            self.executor.prepare(self.plan)
            self._prepared = True

    def _on_launched(self, task_id: str, handle: WorkerHandle, wave: Wave) -> None:
        orphaned = False

        with self._lock:
            record = self.registry.get(task_id)
            if record.is_terminal:
                orphaned = True
            else:
                now = self._clock()
                self.registry.transition(
                    task_id,
                    TaskState.RUNNING,
                    started_at=now,
                    worker_handle=handle,
                    wave_index=wave.index,
                )
                self.metrics.inc("tasks_started_total")
                self.metrics.observe("queue_wait_seconds", now - record.submitted_at)
                self._changed.notify_all()

        if orphaned:
            log.info(f"Task {task_id} was cancelled while launching; stopping {handle.worker_id}")
            self._cancel_remote(task_id, handle)

    def _on_launch_failed(self, task_id: str, error: CumulusError, retryable: bool) -> None:
        with self._lock:
            record = self.registry.get(task_id)
            if record.is_terminal:
                return

            attempts = record.launch_attempts + 1
            self.registry.update(task_id, launch_attempts=attempts)

            if retryable and attempts <= self.plan.launch_retries:
                log.warning(
                    f"Launch of {task_id} failed (attempt {attempts}/{self.plan.launch_retries + 1}): "
                    f"{error} - returning to head of queue"
                )
                self._state = queue.requeue_front(self._state, task_id)
                self.metrics.inc("launch_retries_total")
                return

            log.error(f"Launch of {task_id} failed permanently: {error}")
            self._finish(task_id, TaskState.FAILED, error=error)

    # ------------------------------------------------------------------
    # TERMINAL TRANSITIONS
    # ------------------------------------------------------------------

    def _finish(
        self,
        task_id: str,
        new_state: TaskState,
        now: Optional[float] = None,
        **changes,
    ) -> Optional[TaskRecord]:
        """
        Move a task to a terminal state and free its slot exactly once.

        Caller must hold self._lock. Returns None if the task was
        already terminal (a racing report lost).
        """
        record = self.registry.get(task_id)
        if record.is_terminal:
            return None

        now = now if now is not None else self._clock()
        record = self.registry.transition(task_id, new_state, completed_at=now, **changes)

        self._state = queue.remove(self._state, task_id)
        self._state, released = queue.release(self._state, task_id)

        self.accountant.record(record)

        self.metrics.inc(f"tasks_{new_state.value}_total")
        if record.started_at is not None:
            self.metrics.observe("task_runtime_seconds", now - record.started_at)
        self._update_gauges()
        self._changed.notify_all()

        log.debug(f"Task {task_id} -> {new_state.value} (slot released: {released})")
        return record

    def handle_poll(self, task_id: str, result: PollResult) -> bool:
        """
        Apply one poll observation. Returns True if the task became terminal.
        """
        with self._lock:
            try:
                record = self.registry.get(task_id)
            except UnknownTaskError:
                return False

            if record.is_terminal:
                if result.is_terminal:
                    # result of a cancelled / timed-out task is discarded
                    log.debug(f"Ignoring late {result.status.value} report for {record.state.value} task {task_id}")
                    self.metrics.inc("late_reports_total")
                return False

            if record.state != TaskState.RUNNING:
                return False

            finished = None
            billing = dict(billed_started_at=result.started_at, billed_stopped_at=result.stopped_at)

            if result.status == PollStatus.RUNNING:
                if record.vanished_since is not None:
                    self.registry.update(task_id, vanished_since=None)
                return False

            if result.status == PollStatus.VANISHED:
                now = self._clock()
                if record.vanished_since is None:
                    log.warning(f"Worker for {task_id} vanished; waiting {self.plan.vanished_grace_seconds:.0f}s")
                    self.registry.update(task_id, vanished_since=now)
                    return False
                if now - record.vanished_since < self.plan.vanished_grace_seconds:
                    return False
                finished = self._finish(
                    task_id,
                    TaskState.FAILED,
                    now=now,
                    error=WorkerVanishedError(
                        f"Worker {record.worker_handle.worker_id if record.worker_handle else '?'} "
                        f"for {task_id} disappeared without reporting"
                    ),
                )

            elif result.status == PollStatus.SUCCEEDED:
                finished = self._finish(
                    task_id, TaskState.COMPLETED, result_ref=result.result_ref, **billing
                )

            elif result.status == PollStatus.FAILED:
                finished = self._finish(
                    task_id,
                    TaskState.FAILED,
                    error=result.error or TaskRuntimeError("Task failed"),
                    **billing,
                )

        if finished is not None:
            if finished.state == TaskState.FAILED:
                log.warning(f"Task {task_id} failed: {finished.error}")
            self.advance()
            return True
        return False

    def cancel(self, task_id: str) -> TaskRecord:
        """
        Cancel a pending or running task. Final state is cancelled
        once requested; remote cancellation is best effort.
        """
        with self._lock:
            record = self.registry.get(task_id)
            if record.is_terminal:
                return record
            handle = record.worker_handle
            record = self._finish(task_id, TaskState.CANCELLED)
            log.info(f"Task {task_id} cancelled")

        if handle is not None:
            self._cancel_remote(task_id, handle)

        self.advance()
        return record

    def _cancel_remote(self, task_id: str, handle: WorkerHandle) -> None:
        try:
            self.executor.cancel(handle)
        except (CancelError, TransientInfraError) as exc:
            log.warning(f"Remote cancel of {task_id} ({handle.worker_id}) failed: {exc}")

    # ------------------------------------------------------------------
    # POLLING / TIMEOUTS
    # ------------------------------------------------------------------

    def poll_once(self) -> int:
        """
        One pass over all running tasks plus a timeout sweep.
        Returns the number of tasks that became terminal.
        """
        with self._lock:
            running = [
                (r.task_id, r.worker_handle)
                for r in self.registry
                if r.state == TaskState.RUNNING and r.worker_handle is not None
            ]

        finished = self._poll_running(running)
        finished += self.check_timeouts()
        return finished

    def _poll_one(self, task_id: str, handle: WorkerHandle) -> Optional[PollResult]:
        try:
            return self.executor.poll(handle)
        except CumulusError as exc:
            # transient provider / store trouble; timeout still bounds the task
            log.warning(f"Poll of {task_id} failed, will retry next pass: {exc}")
            return None

    def _poll_running(self, running: Sequence[Tuple[str, WorkerHandle]]) -> int:
        if not running:
            return 0

        if self.plan.poll_concurrency <= 1:
            finished = 0
            for task_id, handle in running:
                result = self._poll_one(task_id, handle)
                if result is not None and self.handle_poll(task_id, result):
                    finished += 1
            return finished

        return self._poll_concurrently(running)

    def _poll_concurrently(self, running: Sequence[Tuple[str, WorkerHandle]]) -> int:
        """
        Poll in parallel and apply each result as soon as it arrives, so
        one slow provider call never holds back other completions.

        A poll still outstanding after plan.poll_timeout is applied by a
        callback when it returns; that task is not polled again meanwhile.
        """
        if self._poll_pool is None:
            self._poll_pool = ThreadPoolExecutor(
                max_workers=self.plan.poll_concurrency,
                thread_name_prefix="cumulus-poll",
            )

        futures: Dict[Future, str] = {}
        with self._lock:
            for task_id, handle in running:
                if task_id in self._polls_in_flight:
                    continue
                self._polls_in_flight.add(task_id)
                futures[self._poll_pool.submit(self._poll_one, task_id, handle)] = task_id

        outstanding = set(futures)
        finished = 0
        try:
            for future in as_completed(futures, timeout=self.plan.poll_timeout):
                outstanding.discard(future)
                if self._apply_poll(futures[future], future):
                    finished += 1
        except FuturesTimeout:
            log.warning(
                f"{len(outstanding)} polls still running after {self.plan.poll_timeout:g}s; "
                f"applying them when they return"
            )
            for future in outstanding:
                future.add_done_callback(partial(self._apply_poll, futures[future]))

        return finished

    def _apply_poll(self, task_id: str, future: Future) -> bool:
        with self._lock:
            self._polls_in_flight.discard(task_id)

        try:
            result = future.result()
        except Exception:
            log.exception(f"Poll of {task_id} crashed")
            return False

        return result is not None and self.handle_poll(task_id, result)

    def check_timeouts(self, now: Optional[float] = None) -> int:
        now = now if now is not None else self._clock()
        expired: List[TaskRecord] = []

        with self._lock:
            for record in self.registry:
                if (
                    record.state == TaskState.RUNNING
                    and record.timeout_seconds is not None
                    and record.started_at is not None
                    and now - record.started_at > record.timeout_seconds
                ):
                    finished = self._finish(
                        record.task_id,
                        TaskState.FAILED,
                        now=now,
                        error=TaskTimeoutError(
                            f"Task {record.task_id} timed out after {record.timeout_seconds:g} seconds"
                        ),
                    )
                    if finished is not None:
                        self.metrics.inc("tasks_timed_out_total")
                        expired.append(finished)

        for record in expired:
            log.warning(f"Task {record.task_id} timed out after {record.timeout_seconds:g}s")
            if record.worker_handle is not None:
                self._cancel_remote(record.task_id, record.worker_handle)

        if expired:
            self.advance()
        return len(expired)

    def start_monitor(self, interval: Optional[float] = None) -> None:
        if self._monitor is None:
            self._monitor = CompletionMonitor(self.poll_once, interval or self.plan.poll_interval)
        self._monitor.start()

    def stop_monitor(self) -> None:
        if self._monitor is not None:
            self._monitor.stop(timeout=self.plan.poll_interval * 2)

    # ------------------------------------------------------------------
    # WAITING
    # ------------------------------------------------------------------

    def wait(self, task_id: str, timeout: Optional[float] = None) -> TaskRecord:
        """
        Block until the task is terminal.

        Waits on the completion signal with a doubling interval capped at
        plan.wait_max_interval. Without a running monitor, each round
        also drives one polling pass.

        Raises:
            UnknownTaskError
            ResolutionTimeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        interval = self.plan.wait_initial_interval

        while True:
            record = self.registry.get(task_id)
            if record.is_terminal:
                return record

            if not self.monitoring:
                self.poll_once()

            with self._changed:
                record = self.registry.get(task_id)
                if record.is_terminal:
                    return record

                wait_for = interval
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise ResolutionTimeout(f"Task {task_id} not resolved within {timeout:g}s")
                    wait_for = min(interval, remaining)

                self._changed.wait(wait_for)

            interval = min(interval * 2, self.plan.wait_max_interval)

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    def discard(self, task_id: str) -> None:
        """Forget a terminal task and delete its stored objects."""
        self.registry.discard(task_id)
        self.store.delete(task_id)

    def close(self, cancel_outstanding: bool = True) -> None:
        self.stop_monitor()

        with self._lock:
            if self._closed:
                return
            self._closed = True
            outstanding = [r.task_id for r in self.registry if not r.is_terminal]

        if cancel_outstanding:
            for task_id in outstanding:
                self.cancel(task_id)

        if self._poll_pool is not None:
            self._poll_pool.shutdown(wait=False)
            self._poll_pool = None

        self.executor.close()

    def _update_gauges(self) -> None:
        state = self._state
        self.metrics.set_gauge("running_tasks", state.running_count)
        self.metrics.set_gauge("pending_tasks", state.pending_count)
        self.metrics.max_gauge("running_tasks_peak", state.running_count)
