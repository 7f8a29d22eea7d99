# engine/dispatch/celery_dispatch.py

"""
Celery dispatch adapter for Cumulus.

Responsibilities:
- Bridge scheduler -> Celery workers
- Dispatch exactly ONE task per call
- Never schedule
- Never decide admission

This file is intentionally thin.
"""

import time
from typing import Optional

from celery.result import AsyncResult
from kombu.exceptions import OperationalError

from engine.exceptions import (
    CancelError,
    FatalLaunchError,
    ResultNotFound,
    TaskRuntimeError,
    TransientInfraError,
)
from engine.storage.results import ResultStore
from engine.storage.serialization import decode_outcome
from engine.utils import get_logger

from .base import PollResult, RemoteExecutor, WorkerHandle
from .retry import RetryPolicy, build_retryer

log = get_logger("dispatch.celery")

_RUNNING_STATES = frozenset({"PENDING", "RECEIVED", "STARTED", "RETRY"})


class CeleryExecutor(RemoteExecutor):
    """
    Stateless dispatcher.

    Scheduler calls this.
    Celery executes tasks.
    """

    name = "celery"

    def __init__(
        self,
        store: ResultStore,
        *,
        app=None,
        task=None,
        region: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=time.sleep,
    ):
        super().__init__(store)
        if task is None:
            from . import celery_tasks

            task = celery_tasks.run_work_unit
            app = app or celery_tasks.celery_app
        self.task = task
        self.app = app
        self.region = region
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def _broker_call(self, fn, operation: str, *args, **kwargs):
        def attempt():
            try:
                return fn(*args, **kwargs)
            except (OperationalError, ConnectionError) as exc:
                raise TransientInfraError(f"{operation}: {exc}") from exc

        return build_retryer(self.retry_policy, operation, sleep=self._sleep)(attempt)

    # -------------------------
    # PUBLIC ENTRYPOINTS
    # -------------------------

    def launch(self, task) -> WorkerHandle:
        bucket = getattr(self.store, "bucket", None)
        if not bucket:
            raise FatalLaunchError("Celery workers need a shared result bucket")

        result = self._broker_call(
            self.task.apply_async,
            "celery.apply_async",
            kwargs={
                "task_id": task.task_id,
                "bucket": bucket,
                "prefix": self.store.prefix,
                "region": self.region,
            },
        )

        log.debug(f"Dispatched {task.task_id} as celery job {result.id}")
        return WorkerHandle(
            worker_id=result.id,
            executor=self.name,
            launched_at=time.time(),
            details={"task_id": task.task_id},
        )

    def _result(self, handle: WorkerHandle) -> AsyncResult:
        return AsyncResult(handle.worker_id, app=self.app)

    def poll(self, handle: WorkerHandle) -> PollResult:
        result = self._result(handle)
        state = self._broker_call(lambda: result.state, "celery.state")
        task_id = handle.details["task_id"]

        if state in _RUNNING_STATES:
            return PollResult.running()

        if state == "REVOKED":
            return PollResult.vanished()

        if state == "FAILURE":
            return PollResult.failed(
                TaskRuntimeError(str(result.result), error_type=type(result.result).__name__)
            )

        # SUCCESS: the worker wrote an Outcome to the store
        try:
            outcome = decode_outcome(self.store.get(task_id))
        except ResultNotFound:
            return PollResult.failed(
                TaskRuntimeError(f"Celery job {handle.worker_id} finished without a result")
            )

        if outcome.ok:
            return PollResult.succeeded(self.store.result_key(task_id))
        return PollResult.failed(outcome.to_error())

    def cancel(self, handle: WorkerHandle) -> None:
        try:
            self._broker_call(self._result(handle).revoke, "celery.revoke", terminate=True)
        except TransientInfraError as exc:
            raise CancelError(f"Could not revoke {handle.worker_id}: {exc}") from exc
