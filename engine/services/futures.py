# engine/services/futures.py

"""
Caller-facing future API.

    with open_session(plan(quota=2, worker_shape=1, memory="2GB")) as session:
        futures = [session.submit(square, x) for x in range(4)]
        print([f.result() for f in futures])

All state lives in the Session passed around explicitly; there is no
process-wide "current backend".
"""

import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Union

from engine.dispatch.base import LogEvent, RemoteExecutor
from engine.dispatch.factory import build_executor, build_store
from engine.exceptions import ResolutionTimeout, TaskCancelledError
from engine.planner.cost_model import CostReport
from engine.planner.plan import ClusterPlan, build_plan
from engine.scheduler.resources import ResourceShape
from engine.scheduler.scheduler import SchedulerStatus, WaveScheduler
from engine.scheduler.state import TaskRecord
from engine.scheduler.types import TaskState
from engine.storage.results import ResultStore
from engine.storage.serialization import WorkUnit, decode_outcome, encode_work
from engine.utils import get_logger

log = get_logger("session")

ON_ERROR_POLICIES = ("wait", "cancel")


class FutureBackend(Protocol):
    """The capability set every backend offers."""

    def submit(self, fn: Callable[..., Any], /, *args, **kwargs) -> "RemoteFuture":
        ...

    def is_resolved(self, handle) -> bool:
        ...

    def value(self, handle, timeout: Optional[float] = None) -> Any:
        ...

    def cancel(self, handle) -> bool:
        ...


class RemoteFuture:
    """Handle to one submitted task. Named after concurrent.futures.Future."""

    __slots__ = ("_session", "_task_id")

    def __init__(self, session: "Session", task_id: str):
        self._session = session
        self._task_id = task_id

    @property
    def task_id(self) -> str:
        return self._task_id

    @property
    def state(self) -> TaskState:
        return self._session.scheduler.get(self._task_id).state

    def done(self) -> bool:
        return self._session.is_resolved(self)

    def cancelled(self) -> bool:
        return self.state == TaskState.CANCELLED

    def result(self, timeout: Optional[float] = None) -> Any:
        return self._session.value(self, timeout=timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        try:
            self.result(timeout=timeout)
        except ResolutionTimeout:
            raise
        except Exception as exc:
            return exc
        return None

    def cancel(self) -> bool:
        return self._session.cancel(self)

    def __repr__(self) -> str:
        return f"<RemoteFuture {self._task_id} state={self.state.value}>"


Handle = Union[RemoteFuture, str]


def _task_id(handle: Handle) -> str:
    return handle.task_id if isinstance(handle, RemoteFuture) else handle


class Session:
    """
    One cluster plan, one scheduler, one result store.

    Thread-safe: submit/value/cancel may be called from any thread.
    """

    def __init__(
        self,
        plan: ClusterPlan,
        *,
        executor: Optional[RemoteExecutor] = None,
        store: Optional[ResultStore] = None,
        monitor: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.plan = plan
        self.store = store or (executor.store if executor is not None else build_store(plan))
        self.executor = executor or build_executor(plan, self.store)
        self.scheduler = WaveScheduler(plan, self.executor, self.store, clock=clock)

        self._values: Dict[str, Any] = {}
        self._values_lock = threading.Lock()
        self._started = time.monotonic()
        self._closed = False

        if monitor:
            self.scheduler.start_monitor()

        log.info(
            f"Session {plan.plan_id}: quota {plan.quota} {plan.quota_mode}, "
            f"{plan.worker_shape.cpu:g} vCPU / {plan.worker_shape.memory_gb:g}GB workers "
            f"on {self.executor.name} (~${plan.estimated_hourly_cost:.2f}/hr at full quota)"
        )

    # -------------------------
    # SUBMIT
    # -------------------------

    def submit(self, fn: Callable[..., Any], /, *args, **kwargs) -> RemoteFuture:
        return self.submit_work(WorkUnit.of(fn, *args, **kwargs))

    def submit_work(
        self,
        work: WorkUnit,
        *,
        shape: Optional[ResourceShape] = None,
        timeout: Optional[float] = None,
        task_id: Optional[str] = None,
    ) -> RemoteFuture:
        """
        Raises:
            FatalLaunchError if the work cannot be serialized
        """
        descriptor = encode_work(work)
        record = self.scheduler.submit(
            descriptor, shape=shape, timeout_seconds=timeout, task_id=task_id
        )
        return RemoteFuture(self, record.task_id)

    # -------------------------
    # RESOLVE
    # -------------------------

    def is_resolved(self, handle: Handle) -> bool:
        return self.scheduler.get(_task_id(handle)).is_terminal

    def value(self, handle: Handle, timeout: Optional[float] = None) -> Any:
        """
        Block until the task is terminal, then return its value or raise
        its recorded error.

        Raises:
            TaskRuntimeError / TaskTimeoutError / WorkerVanishedError /
            FatalLaunchError (whatever failed the task)
            TaskCancelledError
            ResolutionTimeout if `timeout` elapses first
        """
        task_id = _task_id(handle)

        with self._values_lock:
            if task_id in self._values:
                return self._values[task_id]

        record = self.scheduler.wait(task_id, timeout=timeout)
        return self._resolve(record)

    def _resolve(self, record: TaskRecord) -> Any:
        if record.state == TaskState.CANCELLED:
            raise TaskCancelledError(f"Task {record.task_id} was cancelled")

        if record.state == TaskState.FAILED:
            raise record.error

        outcome = decode_outcome(self.store.get(record.task_id))
        value = outcome.unwrap()
        with self._values_lock:
            self._values[record.task_id] = value
        return value

    def cancel(self, handle: Handle) -> bool:
        """True if the task ended up cancelled."""
        record = self.scheduler.cancel(_task_id(handle))
        return record.state == TaskState.CANCELLED

    # -------------------------
    # BATCH
    # -------------------------

    def map(
        self,
        fn: Callable[[Any], Any],
        items: Iterable[Any],
        *,
        on_error: str = "wait",
        timeout: Optional[float] = None,
    ) -> List[Any]:
        """
        Run fn over items remotely, returning results in input order.

        On the first failure (in input order), on_error="wait" lets every
        other task finish before raising it; on_error="cancel" cancels the
        ones still outstanding.
        """
        if on_error not in ON_ERROR_POLICIES:
            raise ValueError(f"on_error must be one of: {', '.join(ON_ERROR_POLICIES)}")

        futures = [self.submit(fn, item) for item in items]
        log.info(
            f"map: {len(futures)} tasks in ~{self.plan.num_waves(len(futures))} waves "
            f"of {self.plan.workers_per_wave}"
        )

        results = []
        for index, future in enumerate(futures):
            try:
                results.append(future.result(timeout=timeout))
            except Exception:
                rest = futures[index + 1:]
                if on_error == "cancel":
                    for other in rest:
                        other.cancel()
                else:
                    for other in rest:
                        try:
                            self.scheduler.wait(other.task_id, timeout=timeout)
                        except ResolutionTimeout:
                            log.warning(f"map: {other.task_id} still running after {timeout:g}s")
                raise
        return results

    # -------------------------
    # REPORTING / LIFECYCLE
    # -------------------------

    def status(self) -> SchedulerStatus:
        return self.scheduler.status()

    def cost_report(self) -> CostReport:
        return self.scheduler.accountant.report()

    def logs(self, handle: Handle, last_n: int = 50) -> List[LogEvent]:
        """Recent output of the worker that ran (or is running) a task."""
        record = self.scheduler.get(_task_id(handle))
        if record.worker_handle is None:
            return []
        return self.executor.worker_logs(record.worker_handle, last_n=last_n)

    def discard(self, handle: Handle) -> None:
        task_id = _task_id(handle)
        self.scheduler.discard(task_id)
        with self._values_lock:
            self._values.pop(task_id, None)

    def close(self, cancel_outstanding: bool = True) -> None:
        if self._closed:
            return
        self._closed = True

        self.scheduler.close(cancel_outstanding=cancel_outstanding)
        status = self.scheduler.status()
        log.info(
            f"Session {self.plan.plan_id} closed: runtime {time.monotonic() - self._started:.1f}s, "
            f"{status.completed} completed, {status.failed} failed, {status.cancelled} cancelled, "
            f"total cost ${status.total_cost:.4f}"
        )

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def plan(
    quota: Optional[int] = None,
    worker_shape: Union[ResourceShape, float, None] = None,
    *,
    memory: Union[int, float, str, None] = None,
    **options,
) -> ClusterPlan:
    """Validated cluster plan; unspecified fields come from Settings."""
    return build_plan(quota, worker_shape, memory=memory, **options)


def open_session(cluster_plan: Optional[ClusterPlan] = None, **options) -> Session:
    """
    open_session(plan(quota=4))
    open_session(quota=4, executor="local")
    """
    session_options = {k: options.pop(k) for k in ("executor_instance", "store", "monitor") if k in options}
    if cluster_plan is None:
        cluster_plan = plan(**options)
    elif options:
        raise TypeError("Pass either a plan or plan options, not both")

    return Session(
        cluster_plan,
        executor=session_options.get("executor_instance"),
        store=session_options.get("store"),
        monitor=session_options.get("monitor", True),
    )
