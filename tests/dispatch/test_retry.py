from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from engine.dispatch.retry import (
    RetryPolicy,
    call_with_retry,
    classify_provider_error,
    is_transient_failure_reason,
)
from engine.exceptions import FatalLaunchError, StorageError, TransientInfraError


def _client_error(code, status=400):
    return ClientError(
        {"Error": {"Code": code, "Message": "msg"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "RunTask",
    )


@pytest.mark.parametrize("code,status", [
    ("ThrottlingException", 400),
    ("ServerException", 500),
    ("SomethingNew", 503),
])
def test_transient_client_errors(code, status):
    assert isinstance(classify_provider_error(_client_error(code, status), "op"), TransientInfraError)


def test_network_errors_are_transient():
    exc = EndpointConnectionError(endpoint_url="https://ecs.us-east-1.amazonaws.com")
    assert isinstance(classify_provider_error(exc, "op"), TransientInfraError)


def test_other_client_errors_are_fatal():
    exc = classify_provider_error(_client_error("AccessDeniedException"), "ecs.run_task")
    assert isinstance(exc, FatalLaunchError)
    assert "ecs.run_task" in str(exc)


def test_fatal_type_is_configurable():
    exc = classify_provider_error(_client_error("AccessDenied", 403), "s3", fatal=StorageError)
    assert isinstance(exc, StorageError)


@pytest.mark.parametrize("reason,transient", [
    ("Capacity is unavailable at this time", True),
    ("RESOURCE:MEMORY", True),
    ("AGENT", True),
    ("MISSING", False),
    ("ATTRIBUTE", False),
])
def test_run_task_failure_reasons(reason, transient):
    assert is_transient_failure_reason(reason) is transient


def test_call_with_retry_retries_transient_then_succeeds():
    fn = Mock(side_effect=[_client_error("Throttling"), _client_error("Throttling"), "ok"])
    sleeps = []

    result = call_with_retry(fn, 1, policy=RetryPolicy(max_attempts=3), operation="op", sleep=sleeps.append, x=2)

    assert result == "ok"
    assert fn.call_count == 3
    fn.assert_called_with(1, x=2)
    assert len(sleeps) == 2
    # exponential backoff with up to 10% jitter
    assert 1.0 <= sleeps[0] <= 1.1
    assert 2.0 <= sleeps[1] <= 2.1


def test_call_with_retry_escalates_after_max_attempts():
    fn = Mock(side_effect=_client_error("Throttling"))

    with pytest.raises(TransientInfraError):
        call_with_retry(fn, policy=RetryPolicy(max_attempts=2), operation="op", sleep=lambda s: None)

    assert fn.call_count == 2


def test_call_with_retry_does_not_retry_fatal():
    fn = Mock(side_effect=_client_error("InvalidParameterException"))

    with pytest.raises(FatalLaunchError):
        call_with_retry(fn, policy=RetryPolicy(), operation="op", sleep=lambda s: None)

    assert fn.call_count == 1


def test_backoff_is_capped():
    fn = Mock(side_effect=[_client_error("Throttling")] * 4 + ["ok"])
    sleeps = []

    call_with_retry(
        fn,
        policy=RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=3.0),
        operation="op",
        sleep=sleeps.append,
    )

    assert max(sleeps) <= 3.0 + 0.1
