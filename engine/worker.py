# engine/worker.py

"""
Worker entrypoint.

A worker runs exactly one task:
1. read tasks/{TASK_ID} from the result store
2. call the work unit
3. write the Outcome to results/{TASK_ID}

User-code exceptions are captured into the Outcome, never raised, so
a failed task still produces a result object. Only infrastructure
failures (descriptor missing, store unreachable) make the process
exit non-zero.
"""

import os
import sys
import time

from engine.exceptions import CumulusError, ResultAlreadyExists
from engine.storage.results import ResultStore
from engine.storage.serialization import Outcome, decode_work, encode_outcome
from engine.utils import get_logger

log = get_logger("worker")


def run_work_unit(payload: bytes) -> Outcome:
    """Decode and call one work unit, capturing whatever it raises."""
    try:
        work = decode_work(payload)
    except Exception as exc:
        return Outcome.rejection(exc)

    try:
        return Outcome.success(work())
    except Exception as exc:
        return Outcome.failure(exc)


def execute_descriptor(store: ResultStore, task_id: str) -> Outcome:
    """
    Run the stored descriptor for task_id and persist its outcome.

    A result that is already present is left alone (a retried or
    duplicated worker lost the race) and the stored outcome wins.
    """
    started = time.time()
    payload = store.get_descriptor(task_id)
    outcome = run_work_unit(payload)

    try:
        store.put(task_id, encode_outcome(outcome))
    except ResultAlreadyExists:
        log.warning(f"Result for {task_id} already written; keeping the first one")

    log.info(
        f"Task {task_id} finished in {time.time() - started:.2f}s "
        f"({'ok' if outcome.ok else outcome.error_type})"
    )
    return outcome


def _store_from_env() -> ResultStore:
    from engine.storage.results import S3ResultStore

    bucket = os.environ.get("RESULT_BUCKET") or os.environ.get("S3_BUCKET")
    if not bucket:
        raise CumulusError("RESULT_BUCKET is not set")

    return S3ResultStore(
        bucket=bucket,
        prefix=os.environ.get("RESULT_PREFIX", ""),
        region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION", "us-east-1"),
    )


def main() -> int:
    task_id = os.environ.get("TASK_ID")
    if not task_id:
        log.error("TASK_ID is not set")
        return 2

    cluster = os.environ.get("CLUSTER_ID", "-")
    log.info(f"Worker starting task {task_id} (plan {cluster})")

    try:
        store = _store_from_env()
        outcome = execute_descriptor(store, task_id)
    except CumulusError as exc:
        log.error(f"Task {task_id} could not run: {exc}")
        return 1

    return 0 if outcome.ok else 3


if __name__ == "__main__":
    sys.exit(main())
