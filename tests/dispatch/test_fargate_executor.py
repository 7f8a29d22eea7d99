from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError, NoCredentialsError

from engine.dispatch.base import LogEvent, PollStatus, WorkerHandle
from engine.dispatch.ecs import (
    DEFAULT_VCPU_QUOTA,
    FargateExecutor,
    discover_vcpu_quota,
    fetch_worker_logs,
    worker_log_stream,
)
from engine.dispatch.retry import RetryPolicy
from engine.exceptions import CancelError, FatalLaunchError, TaskRuntimeError, TransientInfraError
from engine.planner.plan import ClusterPlan, worker_shape
from engine.scheduler.state import TaskRecord
from engine.services.provisioning import CapacityHandles
from engine.storage.serialization import Outcome, encode_outcome

TASK_ARN = "arn:aws:ecs:us-east-1:123456789012:task/cumulus/abc"
NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


def _client_error(code, status=400, operation="RunTask"):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


def _plan(**options):
    options.setdefault("result_bucket", "bucket")
    return ClusterPlan(quota=2, worker_shape=worker_shape(2, "4GB"), executor="fargate", **options)


@pytest.fixture
def ecs():
    client = Mock()
    client.register_task_definition.return_value = {
        "taskDefinition": {"taskDefinitionArn": "arn:aws:ecs:task-definition/cumulus:1"}
    }
    client.run_task.return_value = {"tasks": [{"taskArn": TASK_ARN}], "failures": []}
    return client


@pytest.fixture
def cloudwatch():
    client = Mock()
    client.get_log_events.return_value = {
        "events": [
            {"timestamp": 1767268800000, "message": "Worker starting task t1\n"},
            {"timestamp": 1767268801500, "message": "Task t1 finished in 1.50s (ok)"},
        ]
    }
    return client


@pytest.fixture
def capacity():
    return CapacityHandles(
        subnets=("subnet-1",),
        security_groups=("sg-1",),
        execution_role_arn="arn:aws:iam::123:role/exec",
        task_role_arn="arn:aws:iam::123:role/task",
        log_group="/aws/ecs/cumulus-worker",
    )


@pytest.fixture
def fargate(store, ecs, capacity, cloudwatch):
    return FargateExecutor(
        store,
        cluster="cumulus-cluster",
        region="us-east-1",
        image_provider=Mock(resolve_image=Mock(return_value="123.dkr.ecr/cumulus:latest")),
        provisioner=Mock(ensure_capacity=Mock(return_value=capacity)),
        retry_policy=NO_WAIT,
        client=ecs,
        logs_client=cloudwatch,
        sleep=lambda s: None,
    )


def _task(task_id="t1"):
    return TaskRecord(
        task_id=task_id,
        descriptor_ref=f"tasks/{task_id}",
        shape=worker_shape(2, "4GB"),
        submitted_at=0.0,
    )


def _handle(task_id="t1"):
    return WorkerHandle(worker_id=TASK_ARN, executor="fargate", launched_at=0.0, details={"task_id": task_id})


def _stopped(exit_code=0, stop_code="EssentialContainerExited", reason="Essential container in task exited"):
    return {
        "tasks": [{
            "lastStatus": "STOPPED",
            "stopCode": stop_code,
            "stoppedReason": reason,
            "startedAt": datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
            "stoppedAt": datetime(2026, 1, 1, 12, 1, 30, tzinfo=timezone.utc),
            "containers": [{"name": "cumulus-worker", "exitCode": exit_code}],
        }]
    }


@pytest.mark.contract
def test_prepare_registers_task_definition(fargate, ecs):
    fargate.prepare(_plan())

    kwargs = ecs.register_task_definition.call_args.kwargs
    assert kwargs["cpu"] == "2048"
    assert kwargs["memory"] == "4096"
    assert kwargs["requiresCompatibilities"] == ["FARGATE"]
    assert kwargs["executionRoleArn"] == "arn:aws:iam::123:role/exec"
    container = kwargs["containerDefinitions"][0]
    assert container["image"] == "123.dkr.ecr/cumulus:latest"
    assert container["logConfiguration"]["options"]["awslogs-group"] == "/aws/ecs/cumulus-worker"


@pytest.mark.contract
def test_launch_runs_one_fargate_task(fargate, ecs):
    fargate.prepare(_plan())
    handle = fargate.launch(_task())

    assert handle.worker_id == TASK_ARN
    assert handle.details["task_id"] == "t1"

    kwargs = ecs.run_task.call_args.kwargs
    assert kwargs["launchType"] == "FARGATE"
    assert kwargs["count"] == 1
    assert kwargs["networkConfiguration"]["awsvpcConfiguration"]["subnets"] == ["subnet-1"]
    env = {e["name"]: e["value"] for e in kwargs["overrides"]["containerOverrides"][0]["environment"]}
    assert env["TASK_ID"] == "t1"


@pytest.mark.contract
def test_launch_on_spot_uses_capacity_provider(fargate, ecs):
    fargate.prepare(_plan(use_spot=True))
    fargate.launch(_task())

    kwargs = ecs.run_task.call_args.kwargs
    assert "launchType" not in kwargs
    assert kwargs["capacityProviderStrategy"] == [{"capacityProvider": "FARGATE_SPOT", "weight": 1}]


def test_launch_before_prepare_is_fatal(fargate):
    with pytest.raises(FatalLaunchError):
        fargate.launch(_task())


@pytest.mark.contract
def test_capacity_failure_is_transient(fargate, ecs):
    fargate.prepare(_plan())
    ecs.run_task.return_value = {
        "tasks": [],
        "failures": [{"reason": "Capacity is unavailable at this time", "detail": "try later"}],
    }

    with pytest.raises(TransientInfraError):
        fargate.launch(_task())


@pytest.mark.contract
def test_permanent_failure_is_fatal(fargate, ecs):
    fargate.prepare(_plan())
    ecs.run_task.side_effect = _client_error("AccessDeniedException")

    with pytest.raises(FatalLaunchError):
        fargate.launch(_task())

    assert ecs.run_task.call_count == 1


@pytest.mark.contract
def test_throttled_run_task_is_retried_inside_adapter(fargate, ecs):
    fargate.prepare(_plan())
    ecs.run_task.side_effect = [
        _client_error("ThrottlingException"),
        {"tasks": [{"taskArn": TASK_ARN}], "failures": []},
    ]

    assert fargate.launch(_task()).worker_id == TASK_ARN
    assert ecs.run_task.call_count == 2


@pytest.mark.contract
def test_poll_running(fargate, ecs):
    ecs.describe_tasks.return_value = {"tasks": [{"lastStatus": "RUNNING"}]}
    assert fargate.poll(_handle()).status == PollStatus.RUNNING


@pytest.mark.contract
def test_poll_missing_task_is_vanished(fargate, ecs):
    ecs.describe_tasks.return_value = {"tasks": [], "failures": [{"reason": "MISSING"}]}
    assert fargate.poll(_handle()).status == PollStatus.VANISHED


@pytest.mark.contract
def test_poll_spot_interruption_is_vanished(fargate, ecs):
    ecs.describe_tasks.return_value = _stopped(exit_code=None, stop_code="SpotInterruption")
    assert fargate.poll(_handle()).status == PollStatus.VANISHED


@pytest.mark.contract
def test_poll_success_reports_billing_window(fargate, ecs, store):
    store.put("t1", encode_outcome(Outcome.success(9)))
    ecs.describe_tasks.return_value = _stopped()

    result = fargate.poll(_handle())

    assert result.status == PollStatus.SUCCEEDED
    assert result.result_ref == "results/t1"
    assert result.stopped_at - result.started_at == 90


@pytest.mark.contract
def test_poll_user_failure_reads_error_envelope(fargate, ecs, store):
    store.put("t1", encode_outcome(Outcome.failure(ZeroDivisionError("division by zero"))))
    ecs.describe_tasks.return_value = _stopped(exit_code=3)

    result = fargate.poll(_handle())

    assert result.status == PollStatus.FAILED
    assert isinstance(result.error, TaskRuntimeError)
    assert result.error.error_type == "ZeroDivisionError"


@pytest.mark.contract
def test_poll_crash_without_result(fargate, ecs):
    ecs.describe_tasks.return_value = _stopped(exit_code=137, reason="OutOfMemoryError")

    result = fargate.poll(_handle())

    assert result.status == PollStatus.FAILED
    assert "137" in str(result.error)


@pytest.mark.contract
def test_cancel_stops_task(fargate, ecs):
    fargate.cancel(_handle())

    ecs.stop_task.assert_called_once_with(
        cluster="cumulus-cluster", task=TASK_ARN, reason="Cancelled by cumulus"
    )


@pytest.mark.contract
def test_cancel_rejected(fargate, ecs):
    ecs.stop_task.side_effect = _client_error("InvalidParameterException", operation="StopTask")

    with pytest.raises(CancelError):
        fargate.cancel(_handle())


def test_discover_vcpu_quota():
    client = Mock()
    client.get_service_quota.return_value = {"Quota": {"Value": 256.0}}

    assert discover_vcpu_quota("us-east-1", client=client) == 256.0
    client.get_service_quota.assert_called_once_with(ServiceCode="fargate", QuotaCode="L-3032A538")


def test_discover_vcpu_quota_falls_back():
    client = Mock()
    client.get_service_quota.side_effect = _client_error("AccessDeniedException", operation="GetServiceQuota")

    assert discover_vcpu_quota("us-east-1", client=client) == DEFAULT_VCPU_QUOTA


def test_discover_vcpu_quota_without_credentials_falls_back():
    client = Mock()
    client.get_service_quota.side_effect = NoCredentialsError()

    assert discover_vcpu_quota("us-east-1", client=client) == DEFAULT_VCPU_QUOTA


@pytest.mark.contract
def test_task_definition_pins_cpu_architecture(fargate, ecs):
    fargate.prepare(_plan(cpu_architecture="ARM64"))

    platform = ecs.register_task_definition.call_args.kwargs["runtimePlatform"]
    assert platform == {"cpuArchitecture": "ARM64", "operatingSystemFamily": "LINUX"}


def test_worker_log_stream_uses_task_id():
    assert worker_log_stream(TASK_ARN) == "cumulus/cumulus-worker/abc"


@pytest.mark.contract
def test_worker_logs_read_the_task_stream(fargate, cloudwatch):
    fargate.prepare(_plan())

    events = fargate.worker_logs(_handle(), last_n=10)

    cloudwatch.get_log_events.assert_called_once_with(
        logGroupName="/aws/ecs/cumulus-worker",
        logStreamName="cumulus/cumulus-worker/abc",
        limit=10,
        startFromHead=False,
    )
    assert events == [
        LogEvent(timestamp=1767268800.0, message="Worker starting task t1"),
        LogEvent(timestamp=1767268801.5, message="Task t1 finished in 1.50s (ok)"),
    ]


def test_worker_logs_before_prepare_are_empty(fargate, cloudwatch):
    assert fargate.worker_logs(_handle()) == []
    cloudwatch.get_log_events.assert_not_called()


def test_fetch_worker_logs_defaults_to_latest_stream(cloudwatch):
    cloudwatch.describe_log_streams.return_value = {"logStreams": [{"logStreamName": "cumulus/cumulus-worker/xyz"}]}

    events = fetch_worker_logs("/aws/ecs/cumulus-worker", client=cloudwatch, retry_policy=NO_WAIT)

    assert cloudwatch.describe_log_streams.call_args.kwargs["orderBy"] == "LastEventTime"
    assert cloudwatch.get_log_events.call_args.kwargs["logStreamName"] == "cumulus/cumulus-worker/xyz"
    assert len(events) == 2


def test_fetch_worker_logs_empty_group(cloudwatch):
    cloudwatch.describe_log_streams.return_value = {"logStreams": []}

    assert fetch_worker_logs("/aws/ecs/cumulus-worker", client=cloudwatch, retry_policy=NO_WAIT) == []
    cloudwatch.get_log_events.assert_not_called()


def test_fetch_worker_logs_missing_stream_is_empty(cloudwatch):
    cloudwatch.get_log_events.side_effect = _client_error("ResourceNotFoundException", operation="GetLogEvents")

    events = fetch_worker_logs(
        "/aws/ecs/cumulus-worker", stream="cumulus/cumulus-worker/gone", client=cloudwatch, retry_policy=NO_WAIT
    )

    assert events == []
