# printflow/celery_worker.py
from celery import Celery
from celery.signals import worker_ready

from printflow.utils.settings import (
    CELERY_BROKER_URL,
    CELERY_RESULT_BACKEND,
    RECONCILE_INTERVAL_SECONDS,
)

celery_app = Celery(
    "printflow",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

# task modules have to be imported explicitly to get registered
celery_app.conf.imports = (
    "printflow.tasks.generation",
    "printflow.tasks.fulfillment",
)

celery_app.conf.beat_schedule = {
    "reconcile-orders": {
        "task": "printflow.tasks.fulfillment.reconcile_orders_task",
        "schedule": RECONCILE_INTERVAL_SECONDS,
    },
}

celery_app.conf.task_acks_late = True
celery_app.conf.timezone = "UTC"


@worker_ready.connect
def reconcile_on_startup(sender, **kwargs):
    # orders left unsubmitted while no worker was running
    sender.app.send_task("printflow.tasks.fulfillment.reconcile_orders_task")
