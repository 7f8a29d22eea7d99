# engine/dispatch/celery_tasks.py

"""
Celery worker side.

Start a fleet with:
    celery -A engine.dispatch.celery_tasks worker --concurrency=4

Each Celery task runs one stored descriptor through the shared worker
code and writes its Outcome to the result store. The Celery result
itself only carries the ok flag; the value lives in the store.
"""

from celery import Celery

from config.settings import settings
from engine.storage.results import S3ResultStore
from engine.worker import execute_descriptor
from engine.utils import get_logger

log = get_logger("dispatch.celery")

# --- Celery Application Setup ---
celery_app = Celery(
    "cumulus",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["engine.dispatch.celery_tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    broker_connection_retry_on_startup=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # one unit of work per prefetch, so revoke() reaches queued tasks
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)


@celery_app.task(bind=True, name="cumulus.run_work_unit")
def run_work_unit(self, task_id: str, bucket: str, prefix: str = "", region: str = None) -> dict:
    log.info(f"[WORKER] Celery job {self.request.id} running {task_id}")

    store = S3ResultStore(bucket=bucket, prefix=prefix, region=region or settings.AWS_REGION)
    outcome = execute_descriptor(store, task_id)

    return {"task_id": task_id, "ok": outcome.ok, "error_type": outcome.error_type}
