# all models imported here so SQLAlchemy registers them in Base.metadata

from printflow.data.models.design_session import DesignSessionModel
from printflow.data.models.design_asset import DesignAssetModel
from printflow.data.models.stage_event import StageEventModel
from printflow.data.models.checkout import CheckoutModel
from printflow.data.models.order import OrderModel
from printflow.data.models.order_item import OrderItemModel
from printflow.data.models.order_adjustment import OrderAdjustmentModel
from printflow.data.models.refund_review import RefundReviewModel

__all__ = [
    "DesignSessionModel",
    "DesignAssetModel",
    "StageEventModel",
    "CheckoutModel",
    "OrderModel",
    "OrderItemModel",
    "OrderAdjustmentModel",
    "RefundReviewModel",
]
