# engine/storage/results.py

"""
Write-once result store.

Layout (under an optional prefix):
    tasks/{task_id}    pickled WorkUnit, written on submit
    results/{task_id}  pickled Outcome, written once by the worker

A second put() for the same task is rejected with ResultAlreadyExists,
which is how duplicate completion reports are caught.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError

from engine.dispatch.retry import RetryPolicy, call_with_retry
from engine.exceptions import ResultAlreadyExists, ResultNotFound, StorageError
from engine.utils import get_logger

log = get_logger("storage")

RESULTS_DIR = "results"
TASKS_DIR = "tasks"


def _normalize_prefix(prefix: str) -> str:
    prefix = (prefix or "").strip("/")
    return f"{prefix}/" if prefix else ""


class ResultStore(ABC):
    """
    Durable object store keyed by task id.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = _normalize_prefix(prefix)

    # -------------------------
    # KEYS
    # -------------------------

    def result_key(self, task_id: str) -> str:
        return f"{self.prefix}{RESULTS_DIR}/{task_id}"

    def descriptor_key(self, task_id: str) -> str:
        return f"{self.prefix}{TASKS_DIR}/{task_id}"

    # -------------------------
    # RESULTS (write-once)
    # -------------------------

    def put(self, task_id: str, payload: bytes) -> str:
        """
        Store a task's outcome. Succeeds at most once per task.

        Returns:
            the result key

        Raises:
            ResultAlreadyExists
        """
        key = self.result_key(task_id)
        self._put_once(key, payload)
        return key

    def get(self, task_id: str) -> bytes:
        return self._read(self.result_key(task_id))

    def exists(self, task_id: str) -> bool:
        return self._exists(self.result_key(task_id))

    # -------------------------
    # DESCRIPTORS
    # -------------------------

    def put_descriptor(self, task_id: str, payload: bytes) -> str:
        key = self.descriptor_key(task_id)
        self._write(key, payload)
        return key

    def get_descriptor(self, task_id: str) -> bytes:
        return self._read(self.descriptor_key(task_id))

    def delete(self, task_id: str) -> None:
        """Remove both descriptor and result of a task (missing keys are fine)."""
        self._remove(self.descriptor_key(task_id))
        self._remove(self.result_key(task_id))

    # -------------------------
    # BACKEND PRIMITIVES
    # -------------------------

    @abstractmethod
    def _put_once(self, key: str, payload: bytes) -> None: ...

    @abstractmethod
    def _write(self, key: str, payload: bytes) -> None: ...

    @abstractmethod
    def _read(self, key: str) -> bytes: ...

    @abstractmethod
    def _exists(self, key: str) -> bool: ...

    @abstractmethod
    def _remove(self, key: str) -> None: ...


class InMemoryResultStore(ResultStore):
    """Process-local store for the local fleet and tests."""

    def __init__(self, prefix: str = ""):
        super().__init__(prefix)
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def _put_once(self, key: str, payload: bytes) -> None:
        with self._lock:
            if key in self._objects:
                raise ResultAlreadyExists(key)
            self._objects[key] = bytes(payload)

    def _write(self, key: str, payload: bytes) -> None:
        with self._lock:
            self._objects[key] = bytes(payload)

    def _read(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._objects[key]
            except KeyError:
                raise ResultNotFound(key) from None

    def _exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def _remove(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def keys(self):
        with self._lock:
            return sorted(self._objects)


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class S3ResultStore(ResultStore):
    """
    S3-backed store.

    Write-once is enforced by S3 itself through a conditional put
    (If-None-Match: *), so two racing writers cannot both succeed.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        region: Optional[str] = None,
        client=None,
        retry_policy: Optional[RetryPolicy] = None,
        endpoint_url: Optional[str] = None,
    ):
        super().__init__(prefix)
        if not bucket:
            raise ValueError("bucket must not be empty")

        self.bucket = bucket
        self.s3 = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            config=Config(signature_version="s3v4", retries={"max_attempts": 1}),
        )
        self.retry_policy = retry_policy or RetryPolicy()

    def uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def _call(self, fn, operation: str, **kwargs):
        return call_with_retry(
            fn,
            policy=self.retry_policy,
            operation=operation,
            fatal=StorageError,
            **kwargs,
        )

    def _put_once(self, key: str, payload: bytes) -> None:
        def put():
            try:
                self.s3.put_object(Bucket=self.bucket, Key=key, Body=payload, IfNoneMatch="*")
            except ClientError as exc:
                if _error_code(exc) in ("PreconditionFailed", "ConditionalRequestConflict"):
                    raise ResultAlreadyExists(self.uri(key)) from exc
                raise

        self._call(put, "S3 PutObject")
        log.debug(f"Stored {self.uri(key)}")

    def _write(self, key: str, payload: bytes) -> None:
        self._call(self.s3.put_object, "S3 PutObject", Bucket=self.bucket, Key=key, Body=payload)

    def _read(self, key: str) -> bytes:
        def get():
            try:
                response = self.s3.get_object(Bucket=self.bucket, Key=key)
            except ClientError as exc:
                if _error_code(exc) in ("NoSuchKey", "404", "NotFound"):
                    raise ResultNotFound(self.uri(key)) from exc
                raise
            return response["Body"].read()

        return self._call(get, "S3 GetObject")

    def _exists(self, key: str) -> bool:
        def head():
            try:
                self.s3.head_object(Bucket=self.bucket, Key=key)
            except ClientError as exc:
                if _error_code(exc) in ("NoSuchKey", "404", "NotFound"):
                    return False
                raise
            return True

        return self._call(head, "S3 HeadObject")

    def _remove(self, key: str) -> None:
        self._call(self.s3.delete_object, "S3 DeleteObject", Bucket=self.bucket, Key=key)

    def cleanup(self) -> int:
        """
        Delete all task descriptors under this store's prefix.
        Results are kept. Returns the number of deleted objects.
        """
        prefix = f"{self.prefix}{TASKS_DIR}/"
        deleted = 0

        paginator = self.s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
            if not objects:
                continue
            self._call(
                self.s3.delete_objects,
                "S3 DeleteObjects",
                Bucket=self.bucket,
                Delete={"Objects": objects},
            )
            deleted += len(objects)

        log.info(f"Removed {deleted} task descriptors from s3://{self.bucket}/{prefix}")
        return deleted
