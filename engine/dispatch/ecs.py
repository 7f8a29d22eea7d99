# engine/dispatch/ecs.py

"""
AWS ECS / Fargate executor.

One task = one Fargate task running the worker image. The worker reads
tasks/{TASK_ID} from S3 and writes results/{TASK_ID}; this adapter only
starts, observes and stops containers.
"""

import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from engine.exceptions import (
    CancelError,
    CumulusError,
    FatalLaunchError,
    ResultNotFound,
    TaskRuntimeError,
    TransientInfraError,
)
from engine.services.provisioning import (
    CapacityHandles,
    ImageProvider,
    InfraProvisioner,
    SettingsProvisioner,
    StaticImageProvider,
)
from engine.storage.results import ResultStore
from engine.storage.serialization import decode_outcome
from engine.utils import get_logger

from .base import LogEvent, PollResult, RemoteExecutor, WorkerHandle
from .retry import RetryPolicy, call_with_retry, is_transient_failure_reason

log = get_logger("dispatch.ecs")

FARGATE_VCPU_QUOTA_CODE = "L-3032A538"
DEFAULT_VCPU_QUOTA = 100.0
LOG_STREAM_PREFIX = "cumulus"

# stop codes / reasons that mean the platform took the container away
_EVICTION_STOP_CODES = frozenset({"SpotInterruption", "TerminationNotice"})


def _timestamp(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    return float(value)


class FargateExecutor(RemoteExecutor):
    name = "fargate"

    def __init__(
        self,
        store: ResultStore,
        *,
        cluster: str,
        region: str,
        container_name: str = "cumulus-worker",
        image_provider: Optional[ImageProvider] = None,
        provisioner: Optional[InfraProvisioner] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client=None,
        logs_client=None,
        sleep=time.sleep,
    ):
        super().__init__(store)
        self.cluster = cluster
        self.region = region
        self.container_name = container_name
        self.image_provider = image_provider or StaticImageProvider()
        self.provisioner = provisioner or SettingsProvisioner()
        self.retry_policy = retry_policy or RetryPolicy()

        self.ecs = client or boto3.client(
            "ecs", region_name=region, config=Config(retries={"max_attempts": 0})
        )
        self._logs = logs_client
        self._sleep = sleep
        self._lock = threading.Lock()

        self.task_definition_arn: Optional[str] = None
        self.capacity: Optional[CapacityHandles] = None
        self.use_spot = False
        self.plan_id: Optional[str] = None

    def _call(self, fn, operation: str, fatal=FatalLaunchError, **kwargs):
        return call_with_retry(
            fn,
            policy=self.retry_policy,
            operation=operation,
            sleep=self._sleep,
            fatal=fatal,
            **kwargs,
        )

    # -------------------------
    # SESSION SETUP
    # -------------------------

    def prepare(self, plan) -> None:
        image = self.image_provider.resolve_image(plan)
        capacity = self.provisioner.ensure_capacity(plan)

        container: Dict[str, Any] = {
            "name": self.container_name,
            "image": image,
            "essential": True,
            "command": ["python", "-m", "engine.worker"],
        }
        if capacity.log_group:
            container["logConfiguration"] = {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": capacity.log_group,
                    "awslogs-region": self.region,
                    "awslogs-stream-prefix": LOG_STREAM_PREFIX,
                },
            }

        params: Dict[str, Any] = {
            "family": f"cumulus-{plan.plan_id}",
            "networkMode": "awsvpc",
            "requiresCompatibilities": ["FARGATE"],
            "cpu": plan.worker_shape.ecs_cpu_units,
            "memory": plan.worker_shape.ecs_memory_mb,
            "containerDefinitions": [container],
            "runtimePlatform": {
                "cpuArchitecture": plan.cpu_architecture,
                "operatingSystemFamily": "LINUX",
            },
        }
        if capacity.execution_role_arn:
            params["executionRoleArn"] = capacity.execution_role_arn
        if capacity.task_role_arn:
            params["taskRoleArn"] = capacity.task_role_arn

        response = self._call(self.ecs.register_task_definition, "ecs.register_task_definition", **params)

        with self._lock:
            self.task_definition_arn = response["taskDefinition"]["taskDefinitionArn"]
            self.capacity = capacity
            self.use_spot = plan.use_spot
            self.plan_id = plan.plan_id

        log.info(
            f"Task definition registered: {self.task_definition_arn} "
            f"({plan.worker_shape.cpu:g} vCPU, {plan.worker_shape.memory_gb:g}GB, image {image})"
        )

    # -------------------------
    # LAUNCH
    # -------------------------

    def launch(self, task) -> WorkerHandle:
        if self.task_definition_arn is None or self.capacity is None:
            raise FatalLaunchError("Fargate executor used before prepare()")

        params: Dict[str, Any] = {
            "cluster": self.cluster,
            "taskDefinition": self.task_definition_arn,
            "count": 1,
            "networkConfiguration": self.capacity.network_configuration(),
            "overrides": {
                "containerOverrides": [
                    {
                        "name": self.container_name,
                        "cpu": int(task.shape.ecs_cpu_units),
                        "memory": int(task.shape.ecs_memory_mb),
                        "environment": self._environment(task.task_id),
                    }
                ],
                "cpu": task.shape.ecs_cpu_units,
                "memory": task.shape.ecs_memory_mb,
            },
            "startedBy": "cumulus",
        }
        if self.use_spot:
            params["capacityProviderStrategy"] = [{"capacityProvider": "FARGATE_SPOT", "weight": 1}]
        else:
            params["launchType"] = "FARGATE"

        response = self._call(self.ecs.run_task, "ecs.run_task", **params)

        failures = response.get("failures") or []
        if failures:
            failure = failures[0]
            reason = f"{failure.get('reason', 'unknown')} - {failure.get('detail', '')}".rstrip(" -")
            if is_transient_failure_reason(failure.get("reason", "")):
                raise TransientInfraError(f"run_task failed for {task.task_id}: {reason}")
            raise FatalLaunchError(f"run_task failed for {task.task_id}: {reason}")

        tasks = response.get("tasks") or []
        if not tasks:
            raise TransientInfraError(f"run_task returned no task for {task.task_id}")

        task_arn = tasks[0]["taskArn"]
        log.debug(f"Launched {task.task_id} as {task_arn}")
        return WorkerHandle(
            worker_id=task_arn,
            executor=self.name,
            launched_at=time.time(),
            details={"task_id": task.task_id},
        )

    def _environment(self, task_id: str):
        env = {
            "TASK_ID": task_id,
            "RESULT_BUCKET": getattr(self.store, "bucket", "") or "",
            "RESULT_PREFIX": self.store.prefix,
            "AWS_DEFAULT_REGION": self.region,
            "CLUSTER_ID": self.plan_id or "",
        }
        return [{"name": k, "value": v} for k, v in env.items()]

    # -------------------------
    # POLL
    # -------------------------

    def poll(self, handle: WorkerHandle) -> PollResult:
        response = self._call(
            self.ecs.describe_tasks,
            "ecs.describe_tasks",
            fatal=TransientInfraError,
            cluster=self.cluster,
            tasks=[handle.worker_id],
        )

        tasks = response.get("tasks") or []
        if not tasks:
            return PollResult.vanished()

        info = tasks[0]
        if info.get("lastStatus") != "STOPPED":
            return PollResult.running()

        task_id = handle.details["task_id"]
        started_at = _timestamp(info.get("startedAt"))
        stopped_at = _timestamp(info.get("stoppedAt"))

        if info.get("stopCode") in _EVICTION_STOP_CODES:
            log.warning(f"{handle.worker_id} was interrupted ({info.get('stopCode')})")
            return PollResult.vanished()

        container = next(
            (c for c in info.get("containers", []) if c.get("name") == self.container_name),
            {},
        )
        exit_code = container.get("exitCode")

        try:
            outcome = decode_outcome(self.store.get(task_id))
        except ResultNotFound:
            outcome = None

        if outcome is not None:
            if outcome.ok and exit_code == 0:
                return PollResult.succeeded(self.store.result_key(task_id), started_at, stopped_at)
            if not outcome.ok:
                return PollResult.failed(outcome.to_error(), started_at, stopped_at)

        reason = info.get("stoppedReason") or container.get("reason") or "container stopped"
        return PollResult.failed(
            TaskRuntimeError(f"Worker exited with code {exit_code}: {reason}", error_type="WorkerExit"),
            started_at,
            stopped_at,
        )

    # -------------------------
    # CANCEL
    # -------------------------

    def cancel(self, handle: WorkerHandle) -> None:
        try:
            self._call(
                self.ecs.stop_task,
                "ecs.stop_task",
                fatal=CancelError,
                cluster=self.cluster,
                task=handle.worker_id,
                reason="Cancelled by cumulus",
            )
        except TransientInfraError as exc:
            raise CancelError(f"Could not stop {handle.worker_id}: {exc}") from exc

    # -------------------------
    # LOGS
    # -------------------------

    def worker_logs(self, handle: WorkerHandle, last_n: int = 50) -> List[LogEvent]:
        log_group = self.capacity.log_group if self.capacity else None
        if not log_group:
            return []

        if self._logs is None:
            self._logs = boto3.client("logs", region_name=self.region)

        return fetch_worker_logs(
            log_group,
            stream=worker_log_stream(handle.worker_id, self.container_name),
            last_n=last_n,
            client=self._logs,
            retry_policy=self.retry_policy,
            sleep=self._sleep,
        )


def discover_vcpu_quota(region: str, client=None) -> float:
    """
    Current Fargate on-demand vCPU quota for the account.

    Falls back to DEFAULT_VCPU_QUOTA when the quota cannot be read
    (no permission, unsupported region).
    """
    client = client or boto3.client("service-quotas", region_name=region)
    try:
        response = call_with_retry(
            client.get_service_quota,
            policy=RetryPolicy(max_attempts=2),
            operation="service-quotas.get_service_quota",
            ServiceCode="fargate",
            QuotaCode=FARGATE_VCPU_QUOTA_CODE,
        )
    except (FatalLaunchError, TransientInfraError, BotoCoreError) as exc:
        log.warning(f"Could not read Fargate vCPU quota ({exc}); assuming {DEFAULT_VCPU_QUOTA:g}")
        return DEFAULT_VCPU_QUOTA

    return float(response["Quota"]["Value"])


def worker_log_stream(task_arn: str, container_name: str = "cumulus-worker") -> str:
    """awslogs stream name: {prefix}/{container}/{ecs task id}."""
    return f"{LOG_STREAM_PREFIX}/{container_name}/{task_arn.rsplit('/', 1)[-1]}"


def fetch_worker_logs(
    log_group: str,
    *,
    stream: Optional[str] = None,
    last_n: int = 50,
    region: Optional[str] = None,
    client=None,
    retry_policy: Optional[RetryPolicy] = None,
    sleep=time.sleep,
) -> List[LogEvent]:
    """
    Last `last_n` CloudWatch events of one worker stream, oldest first.

    Without a stream, reads the most recently written stream in the
    group. A stream that does not exist (yet) has no events.

    Raises:
        TransientInfraError
        CumulusError for permanent CloudWatch errors
    """
    client = client or boto3.client("logs", region_name=region)
    policy = retry_policy or RetryPolicy()

    def call(fn, operation, **kwargs):
        def attempt():
            try:
                return fn(**kwargs)
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                    return {}
                raise

        return call_with_retry(attempt, policy=policy, operation=operation, sleep=sleep, fatal=CumulusError)

    if stream is None:
        streams = call(
            client.describe_log_streams,
            "logs.describe_log_streams",
            logGroupName=log_group,
            orderBy="LastEventTime",
            descending=True,
            limit=1,
        ).get("logStreams") or []
        if not streams:
            return []
        stream = streams[0]["logStreamName"]

    response = call(
        client.get_log_events,
        "logs.get_log_events",
        logGroupName=log_group,
        logStreamName=stream,
        limit=last_n,
        startFromHead=False,
    )
    return [
        LogEvent(timestamp=event["timestamp"] / 1000.0, message=event.get("message", "").rstrip("\n"))
        for event in response.get("events") or []
    ]
