"""
Order Service — ドメインイベント定義

注文で発生した事実をイベントとして他サービスへ通知する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel

from .statuses import FinancialStatus, FulfillmentStatus

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"
ORDER_CANCELLED = "order.cancelled"
ORDER_REFUNDED = "order.refunded"
ORDER_FULFILLED = "order.fulfilled"
SAGA_COMPLETED = "saga.completed"
SAGA_COMPENSATED = "saga.compensated"
SAGA_COMPENSATION_FAILED = "saga.compensation_failed"


class OrderCreated(BaseModel):
    """注文が作成された(Saga 完了)"""
    order_id: UUID
    order_number: str
    store_id: str
    customer_id: str | None
    total_price: Decimal
    currency: str
    financial_status: FinancialStatus
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """ステータスが遷移した"""
    order_id: UUID
    order_number: str
    previous_financial_status: FinancialStatus
    new_financial_status: FinancialStatus
    previous_fulfillment_status: FulfillmentStatus
    new_fulfillment_status: FulfillmentStatus
    actor: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた"""
    order_id: UUID
    order_number: str
    reason: str | None
    financial_status: FinancialStatus
    timestamp: datetime


class OrderRefunded(BaseModel):
    """返金が記録された"""
    order_id: UUID
    refund_id: UUID
    amount: Decimal
    restock_items: bool
    timestamp: datetime


class OrderFulfilled(BaseModel):
    """出荷が記録された"""
    order_id: UUID
    fulfillment_id: UUID
    tracking_number: str | None
    fulfillment_status: FulfillmentStatus
    timestamp: datetime


class SagaFinished(BaseModel):
    """Saga が終端状態に達した(完了 / 補償済み / 補償失敗)"""
    order_id: UUID
    saga_type: str
    status: str
    failed_step: str | None = None
    error: str | None = None
    timestamp: datetime
