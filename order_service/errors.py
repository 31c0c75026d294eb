"""
Order Service — 例外定義

呼び出し側の誤り(不正な遷移など)、外部サービスの失敗(一時的 / 恒久的)、
楽観ロックの競合、Saga の失敗をそれぞれ別の型で表す。
"""

from uuid import UUID


class OrderServiceError(Exception):
    """このサービスが送出する例外の基底クラス"""

    reason_code = "ORDER_SERVICE_ERROR"


# ── 注文ドメイン ─────────────────────────────────


class OrderNotFoundError(OrderServiceError):
    reason_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: UUID | str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class OrderCreationPendingError(OrderServiceError):
    """作成 Saga が終わっていない注文への書き込み"""

    reason_code = "ORDER_CREATION_PENDING"

    def __init__(self, order_id: UUID):
        self.order_id = order_id
        super().__init__(f"Order {order_id} is still being created")


class InvalidTransitionError(OrderServiceError):
    """状態遷移表にない遷移を要求された"""

    reason_code = "INVALID_TRANSITION"

    def __init__(self, axis: str, current: str, requested: str, allowed: list[str]):
        self.axis = axis
        self.current = current
        self.requested = requested
        self.allowed = allowed
        super().__init__(
            f"Cannot transition {axis} status from {current} to {requested}. "
            f"Allowed transitions: {', '.join(allowed) or 'none'}"
        )


class ConcurrentModificationError(OrderServiceError):
    """読み込み後に別の書き込みが先行した(バージョン不一致)"""

    reason_code = "CONCURRENT_MODIFICATION"

    def __init__(self, order_id: UUID, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(
            f"Order {order_id} was modified concurrently (expected version {expected_version})"
        )


class EmptyOrderError(OrderServiceError):
    reason_code = "EMPTY_ORDER"

    def __init__(self, order_id: UUID):
        self.order_id = order_id
        super().__init__(f"Order {order_id} has no line items")


class CancellationNotAllowedError(OrderServiceError):
    reason_code = "CANCELLATION_NOT_ALLOWED"

    def __init__(self, order_id: UUID, financial_status: str):
        self.order_id = order_id
        self.financial_status = financial_status
        super().__init__(
            f"Order {order_id} cannot be cancelled in financial status {financial_status}"
        )


class RefundNotAllowedError(OrderServiceError):
    reason_code = "REFUND_NOT_ALLOWED"

    def __init__(self, order_id: UUID, financial_status: str):
        self.order_id = order_id
        self.financial_status = financial_status
        super().__init__(
            f"Order {order_id} cannot be refunded in financial status {financial_status}"
        )


class RefundAmountExceededError(OrderServiceError):
    reason_code = "REFUND_AMOUNT_EXCEEDED"

    def __init__(self, order_id: UUID, amount, refundable):
        self.order_id = order_id
        self.amount = amount
        self.refundable = refundable
        super().__init__(
            f"Refund amount {amount} exceeds refundable balance {refundable} for order {order_id}"
        )


class FulfillmentNotAllowedError(OrderServiceError):
    reason_code = "FULFILLMENT_NOT_ALLOWED"

    def __init__(self, order_id: UUID, financial_status: str):
        self.order_id = order_id
        self.financial_status = financial_status
        super().__init__(
            f"Order {order_id} must be authorized or paid before fulfillment "
            f"(financial status {financial_status})"
        )


class InvalidFulfillmentItemsError(OrderServiceError):
    """存在しない明細、または未出荷数量を超える出荷"""

    reason_code = "INVALID_FULFILLMENT_ITEMS"

    def __init__(self, order_id: UUID, message: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id}: {message}")


# ── 外部サービス ─────────────────────────────────


class ExternalServiceError(OrderServiceError):
    """在庫・送料・税・決済サービス呼び出しの失敗"""

    reason_code = "EXTERNAL_SERVICE_ERROR"
    transient = False

    def __init__(self, service: str, message: str, status_code: int | None = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class TransientServiceError(ExternalServiceError):
    """タイムアウト・通信エラー・5xx。Saga 内でリトライする。"""

    reason_code = "SERVICE_UNAVAILABLE"
    transient = True


class PermanentServiceError(ExternalServiceError):
    """業務上の拒否。リトライせず即座に補償へ進む。"""

    reason_code = "SERVICE_REJECTED"


class InsufficientStockError(PermanentServiceError):
    reason_code = "INSUFFICIENT_STOCK"


class NoRateAvailableError(PermanentServiceError):
    reason_code = "NO_SHIPPING_RATE"


class PaymentDeclinedError(PermanentServiceError):
    reason_code = "PAYMENT_DECLINED"


# ── Saga ────────────────────────────────────────


class SagaFailureError(OrderServiceError):
    """注文作成 Saga が失敗し、補償が完了した"""

    reason_code = "SAGA_FAILED"

    def __init__(
        self,
        order_id: UUID,
        failed_step: str,
        reason_code: str,
        message: str,
    ):
        self.order_id = order_id
        self.failed_step = failed_step
        self.reason_code = reason_code
        super().__init__(f"Order {order_id} failed at step {failed_step}: {message}")


class SagaCompensationFailure(SagaFailureError):
    """
    補償処理そのものが失敗した。

    自動復旧できない唯一の状態。注文は手動照合のためにフラグが立てられる。
    """

    def __init__(
        self,
        order_id: UUID,
        failed_step: str,
        compensation_errors: dict[str, str],
    ):
        self.compensation_errors = compensation_errors
        super().__init__(
            order_id,
            failed_step,
            "COMPENSATION_FAILED",
            "compensation failed for "
            + ", ".join(f"{name} ({err})" for name, err in compensation_errors.items()),
        )
