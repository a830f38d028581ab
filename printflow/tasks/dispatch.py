# printflow/tasks/dispatch.py
from printflow.utils.logging import get_logger

logger = get_logger(__name__)


class TaskDispatcher:
    """Hands work to the celery workers; routers only talk to this."""

    def start_generation(self, session_id: str) -> None:
        from printflow.tasks.generation import run_generation_task

        run_generation_task.delay(session_id)
        logger.info(f"Generation queued for session {session_id}")

    def submit_order(self, order_id: str) -> None:
        from printflow.tasks.fulfillment import submit_order_task

        submit_order_task.delay(order_id)
        logger.info(f"Submission queued for order {order_id}")
