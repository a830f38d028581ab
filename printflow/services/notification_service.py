# printflow/services/notification_service.py
import json
from typing import Any, Dict, Iterator

import redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from printflow.data.models.order import OrderModel
from printflow.data.models.stage_event import StageEventModel
from printflow.domain.errors import NotFound
from printflow.domain.stages import is_terminal
from printflow.domain.status import customer_status
from printflow.repos.session_repo import SessionRepo
from printflow.utils.logging import get_logger
from printflow.utils.retry import redis_retry
from printflow.utils.settings import REDIS_URL

logger = get_logger(__name__)


def session_channel(session_id: str) -> str:
    return f"session:{session_id}"


def order_channel(order_id: str) -> str:
    return f"order:{order_id}"


class RedisSubscription:
    def __init__(self, pubsub):
        self.pubsub = pubsub

    def get(self, timeout: float) -> Dict[str, Any] | None:
        msg = self.pubsub.get_message(timeout=timeout)
        if not msg or msg.get("type") != "message":
            return None
        return json.loads(msg["data"])

    def close(self):
        self.pubsub.close()


class RedisEventBus:
    """Fan-out over redis pub/sub. Nothing is stored, late subscribers miss messages."""

    def __init__(self, url: str | None = None):
        self.redis = redis.Redis.from_url(url or REDIS_URL, decode_responses=True)

    @redis_retry()
    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        self.redis.publish(channel, json.dumps(payload, default=str))

    def listen(self, channel: str) -> RedisSubscription:
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(channel)
        return RedisSubscription(pubsub)


def event_payload(event: StageEventModel) -> Dict[str, Any]:
    return {
        "session_id": event.session_id,
        "seq": event.seq,
        "stage": event.stage,
        "progress": event.progress,
        "message": event.message,
        "error_code": event.error_code,
        "attempt": event.attempt,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


def order_payload(order: OrderModel) -> Dict[str, Any]:
    code, message = customer_status(order.payment_status, order.fulfillment_status)
    return {
        "order_id": order.id,
        "version": order.version,
        "payment_status": order.payment_status,
        "fulfillment_status": order.fulfillment_status,
        "status": code,
        "status_message": message,
        "tracking_code": order.tracking_code,
        "tracking_url": order.tracking_url,
    }


class StatusNotifier:
    """
    Stage and order status fan-out.

    The stage_events table is the ordered log of a session, the bus is only
    a shortcut to it. ``snapshot`` is always the source of truth; ``subscribe``
    replays the log so a client that connects late or drops messages still
    sees every stage in order (at-least-once, deduplicated by seq).
    """

    def __init__(self, db: Session, bus: Any = None):
        self.db = db
        self.repo = SessionRepo(db)
        self.bus = bus if bus is not None else RedisEventBus()

    # queries

    def snapshot(self, session_id: str) -> Dict[str, Any]:
        session = self.repo.get_session(session_id)
        if not session:
            raise NotFound("Design session not found")
        return {
            "session_id": session.id,
            "seq": session.version,
            "stage": session.stage,
            "progress": session.progress,
            "message": session.message,
            "error_code": session.error_code,
            "error_message": session.error_message,
            "retry_count": session.retry_count,
            "selected_asset_id": session.selected_asset_id,
            "updated_at": session.updated_at,
        }

    def events(self, session_id: str, after_seq: int = 0) -> list:
        return [event_payload(e) for e in self.repo.get_events(session_id, after_seq)]

    # publishing

    def publish_session(self, session_id: str, after_seq: int) -> None:
        """Publish every committed event newer than ``after_seq``."""
        for payload in self.events(session_id, after_seq):
            self._publish(session_channel(session_id), payload)

    def publish_order(self, order: OrderModel) -> None:
        self._publish(order_channel(order.id), order_payload(order))

    def _publish(self, channel: str, payload: Dict[str, Any]) -> None:
        try:
            self.bus.publish(channel, payload)
        except RedisError as e:
            # subscribers catch up from the log or the snapshot
            logger.warning(f"Publish to {channel} failed: {e}")

    # streaming

    def subscribe(
        self,
        session_id: str,
        after_seq: int = 0,
        poll_timeout: float = 1.0,
        max_idle_polls: int | None = None,
    ) -> Iterator[Dict[str, Any]]:
        if not self.repo.get_session(session_id):
            raise NotFound("Design session not found")

        # subscribe before replaying so nothing falls between the two
        subscription = self.bus.listen(session_channel(session_id))
        last_seq = after_seq
        try:
            for payload in self.events(session_id, last_seq):
                last_seq = payload["seq"]
                yield payload
                if is_terminal(payload["stage"]):
                    return

            idle = 0
            while True:
                msg = subscription.get(timeout=poll_timeout)

                if msg is None or msg["seq"] > last_seq + 1:
                    # idle or a gap: read the log
                    if msg is None:
                        idle += 1
                    for payload in self.events(session_id, last_seq):
                        last_seq = payload["seq"]
                        idle = 0
                        yield payload
                        if is_terminal(payload["stage"]):
                            return
                    if max_idle_polls is not None and idle >= max_idle_polls:
                        return
                    continue

                if msg["seq"] <= last_seq:
                    continue

                last_seq = msg["seq"]
                idle = 0
                yield msg
                if is_terminal(msg["stage"]):
                    return
        finally:
            subscription.close()
