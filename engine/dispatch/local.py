# engine/dispatch/local.py

"""
In-process executor.

Each "worker" is a thread in a private pool. Used for development,
tests and the CLI demo: same scheduler, same store layout, no cloud.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional

from engine.exceptions import FatalLaunchError
from engine.storage.results import ResultStore
from engine.storage.serialization import Outcome
from engine.worker import execute_descriptor
from engine.utils import get_logger

from .base import PollResult, RemoteExecutor, WorkerHandle

log = get_logger("dispatch.local")


class _LocalWorker:
    __slots__ = ("future", "outcome", "started_at", "stopped_at")

    def __init__(self):
        self.future: Optional[Future] = None
        self.outcome: Optional[Outcome] = None
        self.started_at: Optional[float] = None
        self.stopped_at: Optional[float] = None


class LocalExecutor(RemoteExecutor):
    name = "local"

    def __init__(self, store: ResultStore, max_workers: Optional[int] = None):
        super().__init__(store)
        self._max_workers = max_workers
        self._pool: Optional[ThreadPoolExecutor] = None
        self._workers: Dict[str, _LocalWorker] = {}
        self._lock = threading.Lock()
        self._closed = False

    def prepare(self, plan) -> None:
        if self._max_workers is None:
            self._max_workers = plan.workers_per_wave

    def _ensure_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=max(1, self._max_workers or 4),
                thread_name_prefix="cumulus-worker",
            )
        return self._pool

    def _run(self, task_id: str, worker: _LocalWorker) -> None:
        worker.started_at = time.time()
        try:
            worker.outcome = execute_descriptor(self.store, task_id)
        finally:
            worker.stopped_at = time.time()

    def launch(self, task) -> WorkerHandle:
        with self._lock:
            if self._closed:
                raise FatalLaunchError("Local executor is closed")

            worker_id = f"local-{task.task_id}-{task.launch_attempts}"
            worker = _LocalWorker()
            worker.future = self._ensure_pool().submit(self._run, task.task_id, worker)
            self._workers[worker_id] = worker

        log.debug(f"Launched {task.task_id} on {worker_id}")
        return WorkerHandle(
            worker_id=worker_id,
            executor=self.name,
            launched_at=time.time(),
            details={"task_id": task.task_id},
        )

    @property
    def active_workers(self) -> int:
        with self._lock:
            return len(self._workers)

    def poll(self, handle: WorkerHandle) -> PollResult:
        with self._lock:
            worker = self._workers.get(handle.worker_id)

        if worker is None or worker.future is None or worker.future.cancelled():
            self._forget(handle)
            return PollResult.vanished()

        if not worker.future.done():
            return PollResult.running()

        result = self._final_result(handle.details["task_id"], worker)
        self._forget(handle)
        return result

    def _final_result(self, task_id: str, worker: _LocalWorker) -> PollResult:
        exc = worker.future.exception()
        if exc is not None:
            return PollResult.failed(exc, worker.started_at, worker.stopped_at)

        if worker.outcome is None or not self.store.exists(task_id):
            return PollResult.vanished()

        if not worker.outcome.ok:
            return PollResult.failed(worker.outcome.to_error(), worker.started_at, worker.stopped_at)

        return PollResult.succeeded(
            self.store.result_key(task_id), worker.started_at, worker.stopped_at
        )

    def _forget(self, handle: WorkerHandle) -> None:
        with self._lock:
            self._workers.pop(handle.worker_id, None)

    def cancel(self, handle: WorkerHandle) -> None:
        # threads cannot be killed; a queued worker is dropped, a running
        # one finishes and its result is ignored
        with self._lock:
            worker = self._workers.pop(handle.worker_id, None)
        if worker is not None and worker.future is not None:
            worker.future.cancel()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)
