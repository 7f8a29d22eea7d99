# engine/dispatch/factory.py

from typing import Optional

from config.settings import Settings, get_settings
from engine.planner.plan import ClusterPlan
from engine.storage.results import InMemoryResultStore, ResultStore, S3ResultStore

from .base import RemoteExecutor


def build_store(plan: ClusterPlan) -> ResultStore:
    """S3 when the plan names a bucket, otherwise process-local memory."""
    if plan.result_bucket:
        prefix = plan.result_prefix or plan.plan_id
        return S3ResultStore(
            bucket=plan.result_bucket,
            prefix=prefix,
            region=plan.region,
            retry_policy=plan.transient_retry,
        )
    return InMemoryResultStore(prefix=plan.result_prefix)


def build_executor(
    plan: ClusterPlan,
    store: ResultStore,
    settings: Optional[Settings] = None,
) -> RemoteExecutor:
    settings = settings or get_settings()
    options = dict(plan.executor_options)

    if plan.executor == "local":
        from .local import LocalExecutor

        return LocalExecutor(store, **options)

    if plan.executor == "fargate":
        from .ecs import FargateExecutor

        options.setdefault("container_name", settings.WORKER_CONTAINER_NAME)
        return FargateExecutor(
            store,
            cluster=plan.cluster,
            region=plan.region,
            retry_policy=plan.transient_retry,
            **options,
        )

    if plan.executor == "celery":
        from .celery_dispatch import CeleryExecutor

        return CeleryExecutor(
            store,
            region=plan.region,
            retry_policy=plan.transient_retry,
            **options,
        )

    raise ValueError(f"Unknown executor: {plan.executor}")
