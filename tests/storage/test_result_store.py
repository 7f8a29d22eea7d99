import io
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from engine.dispatch.retry import RetryPolicy
from engine.exceptions import ResultAlreadyExists, ResultNotFound, StorageError
from engine.storage.results import InMemoryResultStore, S3ResultStore

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


def _client_error(code, status=400, operation="PutObject"):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


# -------------------------
# In-memory
# -------------------------

def test_in_memory_put_is_write_once():
    store = InMemoryResultStore()
    assert store.put("t1", b"first") == "results/t1"

    with pytest.raises(ResultAlreadyExists):
        store.put("t1", b"second")

    assert store.get("t1") == b"first"


def test_in_memory_missing_result():
    store = InMemoryResultStore()
    with pytest.raises(ResultNotFound):
        store.get("nope")
    assert store.exists("nope") is False


def test_prefix_layout():
    store = InMemoryResultStore(prefix="/session-1/")
    store.put_descriptor("t1", b"work")
    store.put("t1", b"out")

    assert store.keys() == ["session-1/results/t1", "session-1/tasks/t1"]


def test_delete_removes_descriptor_and_result():
    store = InMemoryResultStore()
    store.put_descriptor("t1", b"work")
    store.put("t1", b"out")

    store.delete("t1")
    store.delete("t1")

    assert store.keys() == []


# -------------------------
# S3
# -------------------------

@pytest.fixture
def s3():
    return Mock()


@pytest.fixture
def s3_store(s3):
    return S3ResultStore(bucket="results-bucket", prefix="plan-1", client=s3, retry_policy=NO_WAIT)


def test_s3_put_uses_conditional_write(s3_store, s3):
    key = s3_store.put("t1", b"payload")

    assert key == "plan-1/results/t1"
    s3.put_object.assert_called_once_with(
        Bucket="results-bucket", Key="plan-1/results/t1", Body=b"payload", IfNoneMatch="*"
    )


def test_s3_duplicate_put_rejected(s3_store, s3):
    s3.put_object.side_effect = _client_error("PreconditionFailed", 412)

    with pytest.raises(ResultAlreadyExists):
        s3_store.put("t1", b"payload")

    assert s3.put_object.call_count == 1


def test_s3_descriptor_write_is_unconditional(s3_store, s3):
    s3_store.put_descriptor("t1", b"work")

    kwargs = s3.put_object.call_args.kwargs
    assert kwargs["Key"] == "plan-1/tasks/t1"
    assert "IfNoneMatch" not in kwargs


def test_s3_get_missing_is_not_found(s3_store, s3):
    s3.get_object.side_effect = _client_error("NoSuchKey", 404, "GetObject")

    with pytest.raises(ResultNotFound):
        s3_store.get("t1")


def test_s3_get_reads_body(s3_store, s3):
    s3.get_object.return_value = {"Body": io.BytesIO(b"result")}

    assert s3_store.get("t1") == b"result"


def test_s3_exists(s3_store, s3):
    assert s3_store.exists("t1") is True

    s3.head_object.side_effect = _client_error("404", 404, "HeadObject")
    assert s3_store.exists("t1") is False


def test_s3_throttling_is_retried(s3_store, s3):
    s3.get_object.side_effect = [
        _client_error("SlowDown", 503, "GetObject"),
        {"Body": io.BytesIO(b"ok")},
    ]

    assert s3_store.get("t1") == b"ok"
    assert s3.get_object.call_count == 2


def test_s3_access_denied_is_storage_error(s3_store, s3):
    s3.get_object.side_effect = _client_error("AccessDenied", 403, "GetObject")

    with pytest.raises(StorageError):
        s3_store.get("t1")

    assert s3.get_object.call_count == 1


def test_s3_cleanup_deletes_descriptors_only(s3_store, s3):
    paginator = Mock()
    paginator.paginate.return_value = [
        {"Contents": [{"Key": "plan-1/tasks/a"}, {"Key": "plan-1/tasks/b"}]},
        {},
    ]
    s3.get_paginator.return_value = paginator

    assert s3_store.cleanup() == 2

    paginator.paginate.assert_called_once_with(Bucket="results-bucket", Prefix="plan-1/tasks/")
    s3.delete_objects.assert_called_once_with(
        Bucket="results-bucket",
        Delete={"Objects": [{"Key": "plan-1/tasks/a"}, {"Key": "plan-1/tasks/b"}]},
    )


def test_s3_requires_bucket(s3):
    with pytest.raises(ValueError):
        S3ResultStore(bucket="", client=s3)
