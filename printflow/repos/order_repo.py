# printflow/repos/order_repo.py
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from printflow.data.models.order import OrderModel
from printflow.data.models.order_adjustment import OrderAdjustmentModel
from printflow.data.models.order_item import OrderItemModel
from printflow.data.models.refund_review import RefundReviewModel


class OrderRepo:
    def __init__(self, db: Session):
        self.db = db

    def get_order(self, order_id: str) -> OrderModel | None:
        return self.db.get(OrderModel, order_id)

    def get_by_payment_ref(self, payment_ref: str) -> OrderModel | None:
        return self.db.execute(
            select(OrderModel).where(OrderModel.payment_ref == payment_ref)
        ).scalar_one_or_none()

    def get_by_provider_ref(self, provider_order_ref: str) -> OrderModel | None:
        return self.db.execute(
            select(OrderModel).where(OrderModel.provider_order_ref == provider_order_ref)
        ).scalar_one_or_none()

    def get_by_tracking_code(self, tracking_code: str) -> OrderModel | None:
        return self.db.execute(
            select(OrderModel).where(OrderModel.tracking_code == tracking_code)
        ).scalars().first()

    def list_by_owner(self, owner_id: str) -> List[OrderModel]:
        return list(
            self.db.execute(
                select(OrderModel)
                .where(OrderModel.owner_id == owner_id)
                .order_by(OrderModel.created_at.desc())
            ).scalars().all()
        )

    def add_order(self, order: OrderModel, items: List[OrderItemModel]) -> OrderModel:
        """Stages order and items in the current transaction; caller commits."""
        self.db.add(order)
        self.db.flush()
        for item in items:
            item.order_id = order.id
            self.db.add(item)
        self.db.flush()
        return order

    def update_order_version(
        self,
        order_id: str,
        new_data: Dict[str, Any],
        old_version: int | None = None,
        **expected: Any,
    ) -> int:
        """
        Conditional write on column preconditions, e.g.
        ``fulfillment_status="unsubmitted"``, and optionally on the version.
        Always bumps the version. Returns the rowcount.
        """
        stmt = (
            update(OrderModel)
            .where(OrderModel.id == order_id)
            .values(
                **new_data,
                version=OrderModel.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if old_version is not None:
            stmt = stmt.where(OrderModel.version == old_version)
        for column, value in expected.items():
            stmt = stmt.where(getattr(OrderModel, column) == value)
        return self.db.execute(stmt).rowcount

    # reconciliation scans

    def find_unsubmitted_paid(
        self, created_before: datetime, due_at: datetime, limit: int = 100
    ) -> List[OrderModel]:
        """Paid, unsubmitted orders past the grace period whose retry backoff has elapsed."""
        return list(
            self.db.execute(
                select(OrderModel)
                .where(
                    OrderModel.payment_status == "paid",
                    OrderModel.fulfillment_status == "unsubmitted",
                    OrderModel.created_at < created_before,
                    OrderModel.dead_lettered_at.is_(None),
                    or_(OrderModel.next_retry_at.is_(None), OrderModel.next_retry_at <= due_at),
                )
                .order_by(OrderModel.created_at)
                .limit(limit)
            ).scalars().all()
        )

    def find_in_flight(self, limit: int = 100) -> List[OrderModel]:
        return list(
            self.db.execute(
                select(OrderModel)
                .where(OrderModel.fulfillment_status.in_(["submitted", "in_production", "shipped"]))
                .order_by(OrderModel.submitted_at)
                .limit(limit)
            ).scalars().all()
        )

    def find_missing_tracking(self, submitted_before: datetime, limit: int = 100) -> List[OrderModel]:
        return list(
            self.db.execute(
                select(OrderModel)
                .where(
                    OrderModel.fulfillment_status.in_(["submitted", "in_production"]),
                    OrderModel.tracking_code.is_(None),
                    OrderModel.submitted_at < submitted_before,
                    OrderModel.needs_review.is_(False),
                )
                .order_by(OrderModel.submitted_at)
                .limit(limit)
            ).scalars().all()
        )

    def find_attention(self, limit: int = 200) -> List[OrderModel]:
        """Dead-lettered, flagged or rejected orders for the admin retries view."""
        return list(
            self.db.execute(
                select(OrderModel)
                .where(
                    (OrderModel.dead_lettered_at.is_not(None))
                    | (OrderModel.needs_review.is_(True))
                    | (OrderModel.fulfillment_status == "failed")
                )
                .order_by(OrderModel.updated_at.desc())
                .limit(limit)
            ).scalars().all()
        )

    # items, adjustments, refunds

    def get_item(self, order_id: str, item_id: int) -> OrderItemModel | None:
        item = self.db.get(OrderItemModel, item_id)
        if item is None or item.order_id != order_id:
            return None
        return item

    def add_adjustment(self, adjustment: OrderAdjustmentModel) -> OrderAdjustmentModel:
        self.db.add(adjustment)
        self.db.flush()
        return adjustment

    def queue_refund_review(self, order: OrderModel, reason: str, amount_minor: int | None = None):
        existing = self.db.execute(
            select(RefundReviewModel).where(RefundReviewModel.order_id == order.id)
        ).scalar_one_or_none()
        if existing:
            return existing
        review = RefundReviewModel(
            order_id=order.id,
            amount_minor=order.total_minor - order.refunded_minor if amount_minor is None else amount_minor,
            currency=order.currency,
            reason=reason,
            status="pending",
        )
        self.db.add(review)
        self.db.flush()
        return review

    def get_refund_review(self, order_id: str) -> RefundReviewModel | None:
        return self.db.execute(
            select(RefundReviewModel).where(RefundReviewModel.order_id == order_id)
        ).scalar_one_or_none()

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
