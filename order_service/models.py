"""
Order Service — モデル定義

注文ドメインのモデル、API のリクエストモデル、外部サービスが返す
ハンドル(引き当て ID・見積り・決済インテント)、Saga 実行ログのレコード。
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .statuses import FinancialStatus, FulfillmentStatus

CENT = Decimal("0.01")


def money(value: Any) -> Decimal:
    """DB の TEXT / float / int いずれからでも 2 桁の Decimal に正規化する。"""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# ── 注文 ────────────────────────────────────────


class Address(BaseModel):
    first_name: str = ""
    last_name: str = ""
    company: str | None = None
    address1: str
    address2: str | None = None
    city: str
    province: str | None = None
    country: str
    zip: str
    phone: str | None = None


class LineItem(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    variant_id: str
    product_id: str | None = None
    title: str
    sku: str | None = None
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0)

    @property
    def line_total(self) -> Decimal:
        return money(self.price * self.quantity)


class Order(BaseModel):
    """
    注文集約。

    ステータスは OrderStateMachine を通してのみ変更される。
    削除はされず、VOIDED / REFUNDED で終端化される。
    """

    id: UUID
    order_number: str
    store_id: str
    customer_id: str | None = None
    email: str | None = None
    currency: str = "USD"
    financial_status: FinancialStatus = FinancialStatus.PENDING
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED
    line_items: list[LineItem] = Field(default_factory=list)
    shipping_address: Address
    subtotal: Decimal = Decimal("0.00")
    shipping_total: Decimal = Decimal("0.00")
    tax_total: Decimal = Decimal("0.00")
    discount_total: Decimal = Decimal("0.00")
    total_price: Decimal = Decimal("0.00")
    payment_intent_id: str | None = None
    note: str | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    needs_reconciliation: bool = False
    # 作成 Saga が確定(または取消)するまで True。読み取り・コマンドの対象外
    saga_pending: bool = False
    version: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None


class StatusHistoryEntry(BaseModel):
    """受理された遷移1件につき1行。追記のみ。"""

    id: UUID
    order_id: UUID
    previous_financial_status: FinancialStatus
    new_financial_status: FinancialStatus
    previous_fulfillment_status: FulfillmentStatus
    new_fulfillment_status: FulfillmentStatus
    actor: str
    comment: str | None = None
    version: int
    created_at: datetime


class Refund(BaseModel):
    id: UUID
    order_id: UUID
    amount: Decimal
    reason: str | None = None
    restock_items: bool = False
    created_at: datetime


class TransitionSet(BaseModel):
    financial_status: list[FinancialStatus]
    fulfillment_status: list[FulfillmentStatus]
    can_fulfill: bool = False


class FulfillmentLineItem(BaseModel):
    line_item_id: UUID
    quantity: int = Field(ge=1)


class Fulfillment(BaseModel):
    """出荷1件。明細ごとの出荷数量と追跡情報を持つ。"""

    id: UUID
    order_id: UUID
    line_items: list[FulfillmentLineItem]
    tracking_number: str | None = None
    tracking_url: str | None = None
    carrier: str | None = None
    created_at: datetime


# ── Request Models ───────────────────────────────


class CreateOrderRequest(BaseModel):
    store_id: str
    customer_id: str | None = None
    email: str | None = None
    currency: str = "USD"
    line_items: list[LineItem]
    shipping_address: Address
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    note: str | None = None


class UpdateStatusRequest(BaseModel):
    financial_status: FinancialStatus | None = None
    fulfillment_status: FulfillmentStatus | None = None
    comment: str | None = None
    actor: str = "api"


class CancelOrderRequest(BaseModel):
    reason: str | None = None
    actor: str = "api"


class CreateRefundRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str | None = None
    restock_items: bool = False
    actor: str = "api"


class CreateFulfillmentRequest(BaseModel):
    line_items: list[FulfillmentLineItem] = Field(min_length=1)
    tracking_number: str | None = None
    tracking_url: str | None = None
    carrier: str | None = None
    actor: str = "api"


# ── 外部サービスのハンドル ─────────────────────────


class Reservation(BaseModel):
    reservation_id: str
    origin_country: str | None = None
    origin_zip: str | None = None


class ShippingQuote(BaseModel):
    quote_id: str
    amount: Decimal
    currency: str = "USD"
    carrier: str | None = None


class TaxQuote(BaseModel):
    quote_id: str
    amount: Decimal
    rate: Decimal | None = None


class PaymentIntent(BaseModel):
    payment_intent_id: str
    status: str
    amount: Decimal
    currency: str = "USD"

    @property
    def is_authorized(self) -> bool:
        return self.status in ("requires_capture", "authorized")


# ── Saga 実行ログ ────────────────────────────────


class StepStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    COMPENSATED = "COMPENSATED"


class SagaStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPENSATING = "COMPENSATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SagaStatus.COMPLETED,
            SagaStatus.FAILED,
            SagaStatus.COMPENSATION_FAILED,
        )


class SagaStepRecord(BaseModel):
    step_name: str
    position: int
    status: StepStatus = StepStatus.PENDING
    attempt_count: int = 0
    idempotency_key: str
    result: dict[str, Any] | None = None
    last_error: str | None = None
    updated_at: datetime


class SagaExecution(BaseModel):
    order_id: UUID
    saga_type: str
    status: SagaStatus = SagaStatus.RUNNING
    context: dict[str, Any] = Field(default_factory=dict)
    steps: list[SagaStepRecord] = Field(default_factory=list)
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    def step(self, name: str) -> SagaStepRecord:
        for record in self.steps:
            if record.step_name == name:
                return record
        raise KeyError(name)
