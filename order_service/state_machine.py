"""
Order Service — 注文状態機械 (Order State Machine)

遷移表(statuses.py)を使って、注文の現在の状態に対する遷移要求を
検証・拒否・適用する。状態を持たず、同じ入力には常に同じ結果を返す。

永続化はしない。apply() が返す「更新後の注文」と「履歴エントリ」を
呼び出し側が同じトランザクションで書き込む。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from .errors import InvalidTransitionError
from .models import Order, StatusHistoryEntry, TransitionSet
from .statuses import (
    FINANCIAL_TRANSITIONS,
    FULFILLMENT_TRANSITIONS,
    FinancialStatus,
    FulfillmentStatus,
    is_terminal,
    ordered,
)

module_logger = logging.getLogger(__name__)


class OrderStateMachine:
    """財務 / フルフィルメントの2軸を独立に検証する状態機械"""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or module_logger

    def can_transition(
        self,
        order: Order,
        next_financial: FinancialStatus | None = None,
        next_fulfillment: FulfillmentStatus | None = None,
    ) -> bool:
        return self._first_violation(order, next_financial, next_fulfillment) is None

    def validate_transition(
        self,
        order: Order,
        next_financial: FinancialStatus | None = None,
        next_fulfillment: FulfillmentStatus | None = None,
    ) -> None:
        violation = self._first_violation(order, next_financial, next_fulfillment)
        if violation is not None:
            self.logger.info(
                "Rejected %s transition for order %s: %s -> %s",
                violation.axis,
                order.id,
                violation.current,
                violation.requested,
            )
            raise violation

    def validate_new_order(self, order: Order) -> None:
        """新規注文は PENDING / UNFULFILLED から始まる。"""
        if order.financial_status != FinancialStatus.PENDING:
            raise InvalidTransitionError(
                "financial", "(new)", order.financial_status.value, [FinancialStatus.PENDING.value]
            )
        if order.fulfillment_status != FulfillmentStatus.UNFULFILLED:
            raise InvalidTransitionError(
                "fulfillment",
                "(new)",
                order.fulfillment_status.value,
                [FulfillmentStatus.UNFULFILLED.value],
            )

    def get_valid_transitions(self, order: Order) -> TransitionSet:
        return TransitionSet(
            financial_status=ordered(FINANCIAL_TRANSITIONS[order.financial_status]),
            fulfillment_status=ordered(FULFILLMENT_TRANSITIONS[order.fulfillment_status]),
            can_fulfill=self.can_fulfill_order(order),
        )

    def can_cancel_order(self, order: Order) -> bool:
        # 返金済み・取消済み(財務の終端状態)の注文はキャンセルできない
        return not is_terminal(order.financial_status)

    def can_refund_order(self, order: Order) -> bool:
        # 一部返金済みの注文は PARTIALLY_REFUNDED → REFUNDED の遷移で扱う
        return order.financial_status == FinancialStatus.PAID

    def can_fulfill_order(self, order: Order) -> bool:
        return order.financial_status in (
            FinancialStatus.AUTHORIZED,
            FinancialStatus.PAID,
        )

    def apply(
        self,
        order: Order,
        next_financial: FinancialStatus | None = None,
        next_fulfillment: FulfillmentStatus | None = None,
        actor: str = "system",
        comment: str | None = None,
        now: datetime | None = None,
    ) -> tuple[Order, StatusHistoryEntry]:
        """
        遷移を検証し、更新後の注文と履歴エントリを返す。

        version は1つ進める。永続化側はこの値で楽観ロックをかける。
        """
        self.validate_transition(order, next_financial, next_fulfillment)
        now = now or datetime.now(timezone.utc)

        new_financial = (
            FinancialStatus(next_financial)
            if next_financial is not None
            else order.financial_status
        )
        new_fulfillment = (
            FulfillmentStatus(next_fulfillment)
            if next_fulfillment is not None
            else order.fulfillment_status
        )
        updated = order.model_copy(
            update={
                "financial_status": new_financial,
                "fulfillment_status": new_fulfillment,
                "version": order.version + 1,
                "updated_at": now,
            }
        )
        entry = StatusHistoryEntry(
            id=uuid4(),
            order_id=order.id,
            previous_financial_status=order.financial_status,
            new_financial_status=new_financial,
            previous_fulfillment_status=order.fulfillment_status,
            new_fulfillment_status=new_fulfillment,
            actor=actor,
            comment=comment,
            version=updated.version,
            created_at=now,
        )
        return updated, entry

    # ── 内部ヘルパー ─────────────────────────────

    def _first_violation(
        self,
        order: Order,
        next_financial: FinancialStatus | None,
        next_fulfillment: FulfillmentStatus | None,
    ) -> InvalidTransitionError | None:
        # 指定のない軸は常に許可(変更なし)
        if next_financial is not None:
            allowed = FINANCIAL_TRANSITIONS[order.financial_status]
            if next_financial not in allowed:
                return InvalidTransitionError(
                    "financial",
                    order.financial_status.value,
                    FinancialStatus(next_financial).value,
                    [s.value for s in ordered(allowed)],
                )
        if next_fulfillment is not None:
            allowed = FULFILLMENT_TRANSITIONS[order.fulfillment_status]
            if next_fulfillment not in allowed:
                return InvalidTransitionError(
                    "fulfillment",
                    order.fulfillment_status.value,
                    FulfillmentStatus(next_fulfillment).value,
                    [s.value for s in ordered(allowed)],
                )
        return None
