import threading
import time

import pytest

from engine.dispatch.base import PollStatus, WorkerHandle
from engine.dispatch.local import LocalExecutor
from engine.exceptions import FatalLaunchError, TaskRuntimeError
from engine.scheduler.resources import ResourceShape
from engine.scheduler.state import TaskRecord
from engine.storage.serialization import WorkUnit, decode_outcome, encode_work

SHAPE = ResourceShape(cpu=1, memory_gb=2)


def triple(x):
    return 3 * x


def fail():
    raise RuntimeError("nope")


GATE = threading.Event()


def wait_for_gate():
    return GATE.wait(2)


def _task(store, task_id, work):
    ref = store.put_descriptor(task_id, encode_work(work))
    return TaskRecord(task_id=task_id, descriptor_ref=ref, shape=SHAPE, submitted_at=0.0)


def _poll_until_done(executor, handle, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = executor.poll(handle)
        if result.status != PollStatus.RUNNING:
            return result
        time.sleep(0.01)
    raise AssertionError("worker did not finish")


@pytest.fixture
def local(store):
    executor = LocalExecutor(store, max_workers=2)
    yield executor
    executor.close()


def test_runs_work_and_reports_result_ref(local, store):
    handle = local.launch(_task(store, "t1", WorkUnit.of(triple, 5)))
    result = _poll_until_done(local, handle)

    assert result.status == PollStatus.SUCCEEDED
    assert result.result_ref == "results/t1"
    assert result.started_at <= result.stopped_at
    assert decode_outcome(store.get("t1")).value == 15


def test_user_error_is_written_to_store(local, store):
    handle = local.launch(_task(store, "t2", WorkUnit.of(fail)))
    result = _poll_until_done(local, handle)

    assert result.status == PollStatus.FAILED
    assert isinstance(result.error, TaskRuntimeError)
    assert "nope" in str(result.error)
    outcome = decode_outcome(store.get("t2"))
    assert not outcome.ok
    assert outcome.error_type == "RuntimeError"


def test_unknown_handle_is_vanished(local):
    handle = WorkerHandle(worker_id="ghost", executor="local", launched_at=0.0, details={"task_id": "x"})
    assert local.poll(handle).status == PollStatus.VANISHED


def test_cancel_queued_worker(store):
    GATE.clear()
    executor = LocalExecutor(store, max_workers=1)
    try:
        blocker = executor.launch(_task(store, "block", WorkUnit.of(wait_for_gate)))
        queued = executor.launch(_task(store, "queued", WorkUnit.of(triple, 1)))

        executor.cancel(queued)
        GATE.set()

        assert _poll_until_done(executor, blocker).status == PollStatus.SUCCEEDED
        assert executor.poll(queued).status == PollStatus.VANISHED
        assert not store.exists("queued")
    finally:
        executor.close()


def test_launch_after_close_is_fatal(store):
    executor = LocalExecutor(store)
    executor.close()

    with pytest.raises(FatalLaunchError):
        executor.launch(_task(store, "late", WorkUnit.of(triple, 1)))


def test_finished_workers_are_forgotten(local, store):
    handle = local.launch(_task(store, "t3", WorkUnit.of(triple, 2)))
    assert local.active_workers == 1

    assert _poll_until_done(local, handle).status == PollStatus.SUCCEEDED
    assert local.active_workers == 0


def test_cancelled_worker_is_forgotten(store):
    GATE.clear()
    executor = LocalExecutor(store, max_workers=1)
    try:
        blocker = executor.launch(_task(store, "block2", WorkUnit.of(wait_for_gate)))
        queued = executor.launch(_task(store, "queued2", WorkUnit.of(triple, 1)))

        executor.cancel(queued)
        assert executor.active_workers == 1

        GATE.set()
        _poll_until_done(executor, blocker)
        assert executor.active_workers == 0
    finally:
        GATE.set()
        executor.close()


def test_malformed_descriptor_fails_as_launch_error(local, store):
    ref = store.put_descriptor("bad", b"not a pickle")
    record = TaskRecord(task_id="bad", descriptor_ref=ref, shape=SHAPE, submitted_at=0.0)

    result = _poll_until_done(local, local.launch(record))

    assert result.status == PollStatus.FAILED
    assert isinstance(result.error, FatalLaunchError)
    assert "Malformed task descriptor" in str(result.error)
