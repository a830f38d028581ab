# printflow/tasks/generation.py
from printflow.celery_worker import celery_app
from printflow.data.database import SessionLocal
from printflow.domain.stages import is_terminal
from printflow.services.generation_client import GenerationClient
from printflow.services.generation_worker import GenerationWorker
from printflow.services.notification_service import StatusNotifier
from printflow.utils.logging import get_logger
from printflow.utils.settings import GENERATION_POLL_SECONDS, GENERATION_RUN_SECONDS

logger = get_logger(__name__)


@celery_app.task(name="printflow.tasks.generation.run_generation_task")
def run_generation_task(session_id: str):
    logger.info(f"Generation task started for session {session_id}")

    db = SessionLocal()
    try:
        worker = GenerationWorker(db, GenerationClient(), StatusNotifier(db))
        stage = worker.run(session_id, budget_seconds=GENERATION_RUN_SECONDS)
    finally:
        db.close()

    if not is_terminal(stage):
        # the job is still running at the provider, pick it up again later
        run_generation_task.apply_async(args=[session_id], countdown=GENERATION_POLL_SECONDS)
    return stage
