# printflow/repos/checkout_repo.py
from typing import Any, Dict, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from printflow.data.models.checkout import CheckoutModel


class CheckoutRepo:
    def __init__(self, db: Session):
        self.db = db

    def create_checkout(self, checkout: CheckoutModel) -> CheckoutModel:
        self.db.add(checkout)
        self.db.commit()
        self.db.refresh(checkout)
        return checkout

    def get_checkout(self, checkout_id: str) -> CheckoutModel | None:
        return self.db.get(CheckoutModel, checkout_id)

    def get_by_payment_ref(self, payment_ref: str) -> CheckoutModel | None:
        return self.db.execute(
            select(CheckoutModel).where(CheckoutModel.payment_ref == payment_ref)
        ).scalar_one_or_none()

    def update_checkout_version(self, checkout_id: str, old_version: int, new_data: Dict[str, Any]) -> int:
        stmt = (
            update(CheckoutModel)
            .where(CheckoutModel.id == checkout_id, CheckoutModel.version == old_version)
            .values(**new_data, version=old_version + 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    def find_flagged_paid(self, limit: int = 200) -> List[CheckoutModel]:
        """Captured payments that could not become an order."""
        return list(
            self.db.execute(
                select(CheckoutModel)
                .where(
                    CheckoutModel.payment_status == "paid",
                    CheckoutModel.failure_code.is_not(None),
                )
                .order_by(CheckoutModel.created_at.desc())
                .limit(limit)
            ).scalars().all()
        )
